"""
RPC client pool and wallet connector configuration.

Two independent lifetimes: the connector configuration is a cheap immutable
snapshot rebuilt on every registry change, while client handles are expensive,
keyed purely by chain id and kept for the life of the process.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Callable, Dict, Mapping, Optional, Sequence, Tuple

from .chains import ChainRegistry, NetworkDefinition, RegistryChange
from .logging import get_logger
from .rpc_client import RpcClient

logger = get_logger("rpc_pool")

MAINNET_CHAIN_ID = 1
HARDHAT_CHAIN_ID = 31337
STALL_TIMEOUT_MS = 3000

SUPPORTED_WALLETS = (
    "metaMask",
    "walletConnect",
    "ledger",
    "brave",
    "coinbase",
    "rainbow",
)

RpcClientFactory = Callable[[Sequence[str]], RpcClient]


@dataclass(frozen=True)
class RpcClientHandle:
    chain_id: int
    transport_endpoint: str
    created_at: float
    client: RpcClient = field(repr=False, compare=False)
    rpc_urls: Tuple[str, ...] = ()

    async def get_storage_at(self, address: str, slot: str) -> str:
        return await asyncio.to_thread(self.client.get_storage_at, address, slot)

    async def get_bytecode(self, address: str) -> str:
        return await asyncio.to_thread(self.client.get_code, address)


@dataclass(frozen=True)
class ConnectorConfig:
    """What wallet-connection logic reads: enabled chains, transports and wallets."""

    chains: Tuple[NetworkDefinition, ...]
    transports: Mapping[int, Tuple[str, ...]]
    wallets: Tuple[str, ...]
    burner_chain_ids: Tuple[int, ...]
    polling_interval_ms: int
    stall_timeout_ms: int = STALL_TIMEOUT_MS

    @property
    def chain_ids(self) -> Tuple[int, ...]:
        return tuple(chain.id for chain in self.chains)


def build_connector_config(
    builtin: Sequence[NetworkDefinition],
    custom: Sequence[NetworkDefinition],
    mainnet: Optional[NetworkDefinition] = None,
    only_local_burner_wallet: bool = True,
    polling_interval_ms: int = 30000,
) -> ConnectorConfig:
    """Pure function of the network set; never mutates its inputs."""
    targets = tuple(builtin) + tuple(custom)
    chains = targets
    if mainnet is not None and not any(chain.id == MAINNET_CHAIN_ID for chain in targets):
        # wallet connectors always need mainnet for ENS lookups
        chains = targets + (mainnet,)

    wallets = list(SUPPORTED_WALLETS)
    target_ids = tuple(chain.id for chain in targets)
    only_local = all(chain_id == HARDHAT_CHAIN_ID for chain_id in target_ids)
    burner_chain_ids: Tuple[int, ...] = ()
    if only_local or not only_local_burner_wallet:
        wallets.append("burner")
        burner_chain_ids = target_ids
    wallets.append("safe")

    return ConnectorConfig(
        chains=chains,
        transports=MappingProxyType({chain.id: tuple(chain.rpc_urls) for chain in chains}),
        wallets=tuple(wallets),
        burner_chain_ids=burner_chain_ids,
        polling_interval_ms=polling_interval_ms,
    )


class RpcClientPool:
    """
    Lazily created JSON-RPC clients keyed by chain id.

    Handles are never torn down when the registry changes, so an in-flight call
    on one chain is unaffected by adding or removing another.
    """

    def __init__(
        self,
        registry: ChainRegistry,
        client_factory: Optional[RpcClientFactory] = None,
        only_local_burner_wallet: bool = True,
        polling_interval_ms: int = 30000,
        mainnet: Optional[NetworkDefinition] = None,
    ) -> None:
        self._registry = registry
        self._client_factory = client_factory or (lambda urls: RpcClient(urls))
        self._only_local_burner_wallet = only_local_burner_wallet
        self._polling_interval_ms = polling_interval_ms
        self._mainnet = mainnet or registry.find(MAINNET_CHAIN_ID)
        self._handles: Dict[int, RpcClientHandle] = {}
        self._config = self._build_config()

    @property
    def connector_config(self) -> ConnectorConfig:
        return self._config

    def client_for(self, chain_id: int) -> RpcClientHandle:
        definition = self._registry.get_by_id(chain_id)

        handle = self._handles.get(definition.id)
        if handle is not None and handle.rpc_urls == tuple(definition.rpc_urls):
            return handle

        # a chain removed and re-added with other endpoints gets a fresh handle;
        # the previous one stays usable by whoever still holds it
        handle = RpcClientHandle(
            chain_id=definition.id,
            transport_endpoint=definition.rpc_urls[0],
            created_at=time.time(),
            client=self._client_factory(list(definition.rpc_urls)),
            rpc_urls=tuple(definition.rpc_urls),
        )
        self._handles[definition.id] = handle
        logger.debug("Created RPC client for chain %s at %s.", definition.id, handle.transport_endpoint)
        return handle

    def on_registry_changed(self, change: Optional[RegistryChange] = None) -> ConnectorConfig:
        snapshot = change.snapshot if change is not None else self._registry.snapshot
        self._config = self._build_config(snapshot.builtin, snapshot.custom)
        return self._config

    def _build_config(
        self,
        builtin: Optional[Sequence[NetworkDefinition]] = None,
        custom: Optional[Sequence[NetworkDefinition]] = None,
    ) -> ConnectorConfig:
        snapshot = self._registry.snapshot
        return build_connector_config(
            builtin if builtin is not None else snapshot.builtin,
            custom if custom is not None else snapshot.custom,
            mainnet=self._mainnet,
            only_local_burner_wallet=self._only_local_burner_wallet,
            polling_interval_ms=self._polling_interval_ms,
        )
