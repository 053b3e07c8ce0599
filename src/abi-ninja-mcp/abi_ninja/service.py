import asyncio
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from .abi import split_read_write
from .cache import AbiCache
from .chains import ChainRegistry, NetworkDefinition
from .config import Config
from .etherscan_client import EtherscanClient
from .exceptions import AllSourcesExhausted
from .logging import get_logger
from .proxy import ProxyDetector, normalize_address
from .resolver import AbiResolver, RequestGate, Resolution
from .rpc_client import RpcClient
from .rpc_pool import RpcClientPool
from .sources import AbiDirectorySource, AbiSource, BlockExplorerSource, DecompilerSource
from .store import KeyValueStore, get_store

logger = get_logger("service")

NetworkRef = Union[int, str]


def network_to_dict(definition: NetworkDefinition) -> Dict[str, Any]:
    data = definition.to_dict()
    data["label"] = definition.canonical_label
    return data


def _resolved(resolution: Resolution) -> Dict[str, Any]:
    read, write = split_read_write(resolution.abi)
    return {
        "status": "resolved",
        **resolution.as_dict(),
        "read_methods": [entry.get("name") for entry in read],
        "write_methods": [entry.get("name") for entry in write],
    }


class AbiNinjaService:
    """Combine registry, RPC pool, cache and sources behind one async API."""

    def __init__(
        self,
        config: Config,
        store: Optional[KeyValueStore] = None,
        sources: Optional[Sequence[AbiSource]] = None,
        decompiler: Optional[AbiSource] = None,
        rpc_client_factory=None,
    ) -> None:
        self.config = config
        self.store = store if store is not None else get_store(config.store_path)
        self.registry = ChainRegistry(self.store)
        self.pool = RpcClientPool(
            self.registry,
            client_factory=rpc_client_factory or self._make_rpc_client,
            only_local_burner_wallet=config.only_local_burner_wallet,
            polling_interval_ms=config.polling_interval_ms,
        )
        self.cache = AbiCache(self.store)
        self.registry.subscribe(self.pool.on_registry_changed)
        self.registry.subscribe(self.cache.on_registry_changed)

        if sources is None:
            sources = [
                AbiDirectorySource(
                    config.abi_directory_url,
                    timeout=config.request_timeout,
                    max_retries=config.max_retries,
                    backoff_seconds=config.backoff_seconds,
                ),
                BlockExplorerSource(
                    EtherscanClient(
                        api_key=config.etherscan_api_key,
                        base_url=config.etherscan_base_url,
                        timeout=config.request_timeout,
                        max_retries=config.max_retries,
                        backoff_seconds=config.backoff_seconds,
                    )
                ),
            ]
        if decompiler is None:
            decompiler = DecompilerSource(
                config.decompiler_url,
                timeout=config.request_timeout,
                max_retries=config.max_retries,
                backoff_seconds=config.backoff_seconds,
            )

        self.resolver = AbiResolver(
            self.registry,
            self.pool,
            self.cache,
            sources=sources,
            decompiler=decompiler,
            detector=ProxyDetector(),
            manual_only_chain_ids=config.manual_only_chain_ids,
        )
        self._gates: Dict[str, RequestGate] = {}
        self._started = False
        self._start_lock = asyncio.Lock()

    def _make_rpc_client(self, rpc_urls: Sequence[str]) -> RpcClient:
        return RpcClient(
            rpc_urls,
            timeout=self.config.request_timeout,
            max_retries=self.config.max_retries,
            backoff_seconds=self.config.backoff_seconds,
            failover=self.config.rpc_failover,
        )

    async def start(self) -> None:
        """Load persisted custom networks once; later calls are no-ops."""
        async with self._start_lock:
            if self._started:
                return
            await self.registry.load()
            self.pool.on_registry_changed()
            self._started = True
            snapshot = self.registry.snapshot
            logger.info("Loaded %d builtin and %d custom networks.", len(snapshot.builtin), len(snapshot.custom))

    async def resolve_abi(
        self,
        address: str,
        network: NetworkRef,
        abi_text: Optional[str] = None,
        context: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Resolve an ABI and describe the outcome as a plain dict.

        Calls sharing a ``context`` (one UI session, one conversation) go
        through that context's :class:`RequestGate`: when a newer call starts
        before an older one finishes, the older one reports ``superseded``
        instead of its result.
        """
        await self.start()
        chain_id = self.registry.resolve(network).id
        pending = self._resolve(address, chain_id, abi_text)
        if context is None:
            return await pending

        gate = self._gates.setdefault(context, RequestGate())
        result = await gate.submit(pending)
        if result is None:
            return {"status": "superseded", "address": normalize_address(address), "chain_id": chain_id}
        return result

    async def _resolve(self, address: str, chain_id: int, abi_text: Optional[str]) -> Dict[str, Any]:
        try:
            resolution = await self.resolver.resolve(address, chain_id, abi_text=abi_text)
        except AllSourcesExhausted as exc:
            return self._awaiting_manual(exc)
        return _resolved(resolution)

    async def provide_abi(self, address: str, network: NetworkRef, abi_text: str) -> Dict[str, Any]:
        await self.start()
        chain_id = self.registry.resolve(network).id
        resolution = await self.resolver.provide_abi(address, chain_id, abi_text)
        return _resolved(resolution)

    async def decompile_abi(self, address: str, network: NetworkRef) -> Dict[str, Any]:
        await self.start()
        chain_id = self.registry.resolve(network).id
        try:
            resolution = await self.resolver.decompile(address, chain_id)
        except AllSourcesExhausted as exc:
            return {"status": "failed", **exc.as_dict()}
        return _resolved(resolution)

    async def clear_abi(self, address: str, network: NetworkRef) -> Dict[str, Any]:
        await self.start()
        chain_id = self.registry.resolve(network).id
        removed = await self.resolver.clear(address, chain_id)
        return {"address": normalize_address(address), "chain_id": chain_id, "removed": removed}

    async def list_networks(self, include_testnets: bool = True) -> List[Dict[str, Any]]:
        await self.start()
        return [
            network_to_dict(definition)
            for definition in self.registry.list_networks()
            if include_testnets or not definition.is_testnet
        ]

    async def add_custom_network(self, definition: Mapping[str, Any]) -> Dict[str, Any]:
        await self.start()
        added = await self.registry.add_custom_network(definition)
        return network_to_dict(added)

    async def remove_custom_network(self, chain_id: int) -> Dict[str, Any]:
        await self.start()
        removed = await self.registry.remove_custom_network(int(chain_id))
        return network_to_dict(removed)

    async def detect_proxy_target(self, address: str, network: NetworkRef) -> Dict[str, Any]:
        await self.start()
        definition = self.registry.resolve(network)
        record = await self.resolver.detect_proxy(address, definition.id)
        return {"chain_id": definition.id, "network": definition.canonical_label, **record.as_dict()}

    def _awaiting_manual(self, exc: AllSourcesExhausted) -> Dict[str, Any]:
        data = exc.as_dict()
        if exc.is_contract is False:
            next_steps = ["The address holds no bytecode on this chain; check the network."]
        else:
            next_steps = ["provide_abi with the contract ABI JSON", "decompile_abi for a best-effort ABI"]
        return {"status": "awaiting_manual", **data, "next_steps": next_steps}
