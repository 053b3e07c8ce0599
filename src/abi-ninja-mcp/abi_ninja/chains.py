from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from .exceptions import (
    BuiltinNetworkError,
    Conflict,
    InvalidNetworkDefinition,
    NetworkNotFound,
    UnknownChain,
)
from .logging import get_logger
from .store import CUSTOM_NETWORKS_KEY, KeyValueStore, read_or_default

logger = get_logger("chains")

_WORD_RE = re.compile(r"[a-z0-9]+")
_SPACE_RE = re.compile(r"[\s_\-]+")


def _norm(text: str) -> str:
    candidate = (text or "").strip().lower()
    candidate = _SPACE_RE.sub(" ", candidate)
    candidate = " ".join(_WORD_RE.findall(candidate))
    return candidate


def _slug(text: str) -> str:
    return _norm(text).replace(" ", "-")


def _drop_env_words(tokens: List[str]) -> List[str]:
    drop = {"mainnet", "testnet", "network", "chain"}
    return [token for token in tokens if token not in drop]


class NetworkOrigin(str, Enum):
    BUILTIN = "builtin"
    CUSTOM = "custom"


@dataclass(frozen=True)
class NativeCurrency:
    name: str
    symbol: str
    decimals: int = 18


@dataclass(frozen=True)
class NetworkDefinition:
    id: int
    name: str
    native_currency: NativeCurrency
    rpc_urls: Tuple[str, ...]
    is_testnet: bool = False
    origin: NetworkOrigin = NetworkOrigin.BUILTIN

    @property
    def canonical_label(self) -> str:
        return _slug(self.name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "native_currency": {
                "name": self.native_currency.name,
                "symbol": self.native_currency.symbol,
                "decimals": self.native_currency.decimals,
            },
            "rpc_urls": list(self.rpc_urls),
            "is_testnet": self.is_testnet,
            "origin": self.origin.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], origin: NetworkOrigin = NetworkOrigin.CUSTOM) -> "NetworkDefinition":
        """
        Build a definition from a plain mapping.

        Accepts the persisted snake_case layout as well as the camelCase chain
        objects used by wallet libraries (``nativeCurrency``, ``rpcUrls`` with
        ``default.http``, ``testnet``).
        """
        if not isinstance(data, Mapping):
            raise InvalidNetworkDefinition("Network definition must be an object.")

        raw_id = data.get("id", data.get("chain_id"))
        try:
            chain_id = int(raw_id)
        except (TypeError, ValueError) as exc:
            raise InvalidNetworkDefinition(f"Invalid chain id {raw_id!r}.") from exc

        currency_raw = data.get("native_currency") or data.get("nativeCurrency") or {}
        if not isinstance(currency_raw, Mapping):
            raise InvalidNetworkDefinition("native_currency must be an object.")
        try:
            decimals = int(currency_raw.get("decimals", 18))
        except (TypeError, ValueError) as exc:
            raise InvalidNetworkDefinition("native_currency.decimals must be an integer.") from exc

        definition = cls(
            id=chain_id,
            name=str(data.get("name", "") or "").strip(),
            native_currency=NativeCurrency(
                name=str(currency_raw.get("name", "") or "").strip(),
                symbol=str(currency_raw.get("symbol", "") or "").strip(),
                decimals=decimals,
            ),
            rpc_urls=_extract_rpc_urls(data.get("rpc_urls", data.get("rpcUrls"))),
            is_testnet=bool(data.get("is_testnet", data.get("isTestnet", data.get("testnet", False)))),
            origin=origin,
        )
        validate_network(definition)
        return definition


def _extract_rpc_urls(raw: Any) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return (raw.strip(),) if raw.strip() else ()
    if isinstance(raw, Mapping):
        urls: List[str] = []
        for group in ("default", "public"):
            entry = raw.get(group)
            if isinstance(entry, Mapping):
                for url in entry.get("http", []) or []:
                    if isinstance(url, str) and url.strip() and url.strip() not in urls:
                        urls.append(url.strip())
        return tuple(urls)
    if isinstance(raw, (list, tuple)):
        return tuple(str(url).strip() for url in raw if str(url).strip())
    raise InvalidNetworkDefinition("rpc_urls must be a list of URLs.")


def validate_network(definition: NetworkDefinition) -> None:
    if isinstance(definition.id, bool) or definition.id <= 0:
        raise InvalidNetworkDefinition(f"Chain id must be a positive integer, got {definition.id}.")
    if not definition.name:
        raise InvalidNetworkDefinition("Network name must be a non-empty string.")
    if definition.native_currency.decimals < 0:
        raise InvalidNetworkDefinition("native_currency.decimals must be non-negative.")
    if not definition.native_currency.symbol:
        raise InvalidNetworkDefinition("native_currency.symbol must be a non-empty string.")
    if not definition.rpc_urls:
        raise InvalidNetworkDefinition("At least one RPC URL is required.")
    for url in definition.rpc_urls:
        if not url.startswith(("http://", "https://")):
            raise InvalidNetworkDefinition(f"RPC URL must be http(s): {url}")


def _builtin(
    chain_id: int,
    name: str,
    rpc_url: str,
    symbol: str = "ETH",
    currency_name: str = "Ether",
    testnet: bool = False,
) -> NetworkDefinition:
    return NetworkDefinition(
        id=chain_id,
        name=name,
        native_currency=NativeCurrency(name=currency_name, symbol=symbol, decimals=18),
        rpc_urls=(rpc_url,),
        is_testnet=testnet,
        origin=NetworkOrigin.BUILTIN,
    )


# Keyed by catalog alias. Some real-world networks appear twice under
# different aliases; EXCLUDED_BUILTIN_ALIASES drops the duplicates.
BUILTIN_NETWORKS: Mapping[str, NetworkDefinition] = MappingProxyType(
    {
        "mainnet": _builtin(1, "Ethereum", "https://cloudflare-eth.com"),
        "sepolia": _builtin(11155111, "Sepolia", "https://rpc.sepolia.org", "SEP", "Sepolia Ether", True),
        "holesky": _builtin(17000, "Holesky", "https://ethereum-holesky-rpc.publicnode.com", testnet=True),
        "optimism": _builtin(10, "OP Mainnet", "https://mainnet.optimism.io"),
        "optimismSepolia": _builtin(11155420, "OP Sepolia", "https://sepolia.optimism.io", testnet=True),
        "arbitrum": _builtin(42161, "Arbitrum One", "https://arb1.arbitrum.io/rpc"),
        "arbitrumNova": _builtin(42170, "Arbitrum Nova", "https://nova.arbitrum.io/rpc"),
        "arbitrumSepolia": _builtin(
            421614, "Arbitrum Sepolia", "https://sepolia-rollup.arbitrum.io/rpc", testnet=True
        ),
        "polygon": _builtin(137, "Polygon", "https://polygon-rpc.com", "POL", "POL"),
        "polygonAmoy": _builtin(80002, "Polygon Amoy", "https://rpc-amoy.polygon.technology", "POL", "POL", True),
        "base": _builtin(8453, "Base", "https://mainnet.base.org"),
        "baseSepolia": _builtin(84532, "Base Sepolia", "https://sepolia.base.org", testnet=True),
        "bsc": _builtin(56, "BNB Smart Chain", "https://bsc-dataseed.bnbchain.org", "BNB", "BNB"),
        "bscTestnet": _builtin(
            97, "BNB Smart Chain Testnet", "https://data-seed-prebsc-1-s1.bnbchain.org:8545", "tBNB", "BNB", True
        ),
        "gnosis": _builtin(100, "Gnosis", "https://rpc.gnosischain.com", "XDAI", "xDAI"),
        "avalanche": _builtin(43114, "Avalanche", "https://api.avax.network/ext/bc/C/rpc", "AVAX", "Avalanche"),
        "avalancheFuji": _builtin(
            43113, "Avalanche Fuji", "https://api.avax-test.network/ext/bc/C/rpc", "AVAX", "Avalanche", True
        ),
        "zkSync": _builtin(324, "zkSync Era", "https://mainnet.era.zksync.io"),
        "scroll": _builtin(534352, "Scroll", "https://rpc.scroll.io"),
        "linea": _builtin(59144, "Linea Mainnet", "https://rpc.linea.build"),
        "lineaGoerli": _builtin(59140, "Linea Goerli Testnet", "https://rpc.goerli.linea.build", testnet=True),
        "lineaTestnet": _builtin(59140, "Linea Goerli Testnet", "https://rpc.goerli.linea.build", testnet=True),
        "lineaSepolia": _builtin(59141, "Linea Sepolia Testnet", "https://rpc.sepolia.linea.build", testnet=True),
        "xLayerTestnet": _builtin(195, "X1 Testnet", "https://testrpc.xlayer.tech", "OKB", "OKB", True),
        "x1Testnet": _builtin(195, "X1 Testnet", "https://testrpc.xlayer.tech", "OKB", "OKB", True),
        "celo": _builtin(42220, "Celo", "https://forno.celo.org", "CELO", "CELO"),
        "fantom": _builtin(250, "Fantom", "https://rpc.ankr.com/fantom", "FTM", "Fantom"),
        "hardhat": _builtin(31337, "Hardhat", "http://127.0.0.1:8545", testnet=True),
    }
)

EXCLUDED_BUILTIN_ALIASES = frozenset({"lineaTestnet", "x1Testnet"})

# Query shorthands that do not appear in network names.
NETWORK_ALIASES: Mapping[str, int] = MappingProxyType(
    {
        "eth": 1,
        "ethereum": 1,
        "mainnet": 1,
        "homestead": 1,
        "op": 10,
        "arb": 42161,
        "arb1": 42161,
        "arbitrum": 42161,
        "nova": 42170,
        "matic": 137,
        "bnb": 56,
        "localhost": 31337,
    }
)


def merge_builtin_networks(
    catalog: Mapping[str, NetworkDefinition],
    excluded_aliases: Iterable[str] = EXCLUDED_BUILTIN_ALIASES,
) -> Tuple[NetworkDefinition, ...]:
    excluded = set(excluded_aliases)
    seen: Dict[int, str] = {}
    out: List[NetworkDefinition] = []
    for alias, definition in catalog.items():
        if alias in excluded:
            continue
        if definition.id in seen:
            logger.warning(
                "Builtin alias %s duplicates chain id %s already registered as %s; skipping.",
                alias,
                definition.id,
                seen[definition.id],
            )
            continue
        seen[definition.id] = alias
        out.append(definition)
    return tuple(out)


@dataclass(frozen=True)
class NetworkSnapshot:
    """Immutable view of the merged network set. Replaced, never mutated."""

    builtin: Tuple[NetworkDefinition, ...]
    custom: Tuple[NetworkDefinition, ...] = ()
    by_id: Mapping[int, NetworkDefinition] = field(init=False, repr=False, compare=False)
    index: Mapping[str, Tuple[int, ...]] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        by_id: Dict[int, NetworkDefinition] = {}
        for definition in self.builtin + self.custom:
            by_id.setdefault(definition.id, definition)
        object.__setattr__(self, "by_id", MappingProxyType(by_id))
        object.__setattr__(self, "index", MappingProxyType(_build_index(self.builtin + self.custom)))

    @property
    def networks(self) -> Tuple[NetworkDefinition, ...]:
        return self.builtin + self.custom

    def with_custom(self, custom: Tuple[NetworkDefinition, ...]) -> "NetworkSnapshot":
        return NetworkSnapshot(builtin=self.builtin, custom=custom)


def _build_index(networks: Iterable[NetworkDefinition]) -> Dict[str, Tuple[int, ...]]:
    idx: Dict[str, List[int]] = {}

    def add(key: str, chain_id: int) -> None:
        normalized = _norm(key)
        if not normalized:
            return
        idx.setdefault(normalized, [])
        if chain_id not in idx[normalized]:
            idx[normalized].append(chain_id)

    registered = set()
    for definition in networks:
        registered.add(definition.id)
        add(str(definition.id), definition.id)
        add(definition.name, definition.id)
        add(definition.canonical_label, definition.id)

        tokens = _drop_env_words(_norm(definition.name).split())
        if tokens:
            add(" ".join(tokens), definition.id)

    # catalog aliases ("arbitrumSepolia") are accepted as names too
    for alias, definition in BUILTIN_NETWORKS.items():
        if definition.id in registered:
            add(alias, definition.id)

    return {key: tuple(ids) for key, ids in idx.items()}


@dataclass(frozen=True)
class RegistryChange:
    kind: str  # "added" | "removed"
    network: NetworkDefinition
    snapshot: NetworkSnapshot


RegistryListener = Callable[[RegistryChange], Union[Awaitable[None], None]]


class ChainRegistry:
    """
    Builtin + user-added networks, deduplicated by chain id.

    Reads go through the current ``NetworkSnapshot`` and never block. Mutations
    are serialized, persisted first, then published as a single reference swap;
    subscribed listeners run before the mutation call returns.
    """

    def __init__(
        self,
        store: KeyValueStore,
        builtin_catalog: Mapping[str, NetworkDefinition] = BUILTIN_NETWORKS,
        excluded_aliases: Iterable[str] = EXCLUDED_BUILTIN_ALIASES,
    ) -> None:
        self._store = store
        self._snapshot = NetworkSnapshot(builtin=merge_builtin_networks(builtin_catalog, excluded_aliases))
        self._listeners: List[RegistryListener] = []
        self._lock = asyncio.Lock()
        self._loaded = False

    @property
    def snapshot(self) -> NetworkSnapshot:
        return self._snapshot

    async def load(self) -> None:
        """Merge custom networks persisted by earlier sessions."""
        async with self._lock:
            raw = await read_or_default(self._store, CUSTOM_NETWORKS_KEY, [])
            if not isinstance(raw, list):
                logger.warning("Ignoring malformed custom network list in store.")
                raw = []

            taken = {definition.id for definition in self._snapshot.builtin}
            custom: List[NetworkDefinition] = []
            for item in raw:
                try:
                    definition = NetworkDefinition.from_dict(item, origin=NetworkOrigin.CUSTOM)
                except InvalidNetworkDefinition as exc:
                    logger.warning("Dropping invalid stored custom network %r: %s", item, exc)
                    continue
                if definition.id in taken:
                    logger.warning(
                        "Dropping stored custom network '%s': chain id %s is already registered.",
                        definition.name,
                        definition.id,
                    )
                    continue
                taken.add(definition.id)
                custom.append(definition)

            self._snapshot = self._snapshot.with_custom(tuple(custom))
            self._loaded = True

    def subscribe(self, listener: RegistryListener) -> None:
        self._listeners.append(listener)

    def list_networks(self) -> List[NetworkDefinition]:
        return list(self._snapshot.networks)

    def find(self, chain_id: int) -> Optional[NetworkDefinition]:
        return self._snapshot.by_id.get(int(chain_id))

    def get_by_id(self, chain_id: int) -> NetworkDefinition:
        definition = self.find(chain_id)
        if definition is None:
            raise UnknownChain(chain_id)
        return definition

    def is_custom(self, chain_id: int) -> bool:
        definition = self.find(chain_id)
        return definition is not None and definition.origin is NetworkOrigin.CUSTOM

    async def add_custom_network(self, definition: Union[NetworkDefinition, Mapping[str, Any]]) -> NetworkDefinition:
        if isinstance(definition, NetworkDefinition):
            candidate = NetworkDefinition(
                id=definition.id,
                name=definition.name,
                native_currency=definition.native_currency,
                rpc_urls=tuple(definition.rpc_urls),
                is_testnet=definition.is_testnet,
                origin=NetworkOrigin.CUSTOM,
            )
            validate_network(candidate)
        else:
            candidate = NetworkDefinition.from_dict(definition, origin=NetworkOrigin.CUSTOM)

        async with self._lock:
            current = self._snapshot
            existing = current.by_id.get(candidate.id)
            if existing is not None:
                raise Conflict(candidate.id, existing.name)

            custom = current.custom + (candidate,)
            await self._store.set(CUSTOM_NETWORKS_KEY, [item.to_dict() for item in custom])
            self._snapshot = current.with_custom(custom)
            logger.info("Added custom network %s (chain id %s).", candidate.name, candidate.id)
            await self._notify(RegistryChange(kind="added", network=candidate, snapshot=self._snapshot))
        return candidate

    async def remove_custom_network(self, chain_id: int) -> NetworkDefinition:
        chain_id = int(chain_id)
        async with self._lock:
            current = self._snapshot
            existing = current.by_id.get(chain_id)
            if existing is None:
                raise NetworkNotFound(chain_id)
            if existing.origin is NetworkOrigin.BUILTIN:
                raise BuiltinNetworkError(chain_id)

            custom = tuple(item for item in current.custom if item.id != chain_id)
            await self._store.set(CUSTOM_NETWORKS_KEY, [item.to_dict() for item in custom])
            self._snapshot = current.with_custom(custom)
            logger.info("Removed custom network %s (chain id %s).", existing.name, chain_id)
            await self._notify(RegistryChange(kind="removed", network=existing, snapshot=self._snapshot))
        return existing

    async def _notify(self, change: RegistryChange) -> None:
        # the mutation is already persisted; listener failures are only logged
        for listener in list(self._listeners):
            try:
                outcome = listener(change)
                if asyncio.iscoroutine(outcome) or isinstance(outcome, asyncio.Future):
                    await outcome
            except Exception as exc:  # pylint: disable=broad-except
                logger.warning(
                    "Registry listener failed after %s of chain %s: %s", change.kind, change.network.id, exc
                )

    def resolve(self, network: Union[int, str, None]) -> NetworkDefinition:
        """
        Resolve a chain id or a network name/alias to a definition.

        Numeric input must be a registered chain id. Names are matched exactly
        against the normalized index first, then by prefix, then by substring;
        ambiguous matches are rejected.
        """
        if network is None:
            raise ValueError("network is required.")

        if isinstance(network, int) and not isinstance(network, bool):
            return self.get_by_id(network)

        raw = str(network).strip()
        if not raw:
            raise ValueError("network must be a non-empty string.")
        if raw.isdigit():
            return self.get_by_id(int(raw))

        snapshot = self._snapshot
        q = _norm(raw)
        alias_id = NETWORK_ALIASES.get(q.replace(" ", ""))
        if alias_id is not None and alias_id in snapshot.by_id:
            return snapshot.by_id[alias_id]

        exact = snapshot.index.get(q) or snapshot.index.get(q.replace(" ", ""))
        if exact:
            return self._pick_or_raise(snapshot, q, exact)

        best: Dict[int, int] = {}
        for key, ids in snapshot.index.items():
            if key.startswith(q):
                score = 80
            elif q in key:
                score = 50
            else:
                continue
            for chain_id in ids:
                best[chain_id] = max(best.get(chain_id, 0), score)

        if not best:
            raise UnknownChain(raw)

        ranked = sorted(best.items(), key=lambda x: (-x[1], x[0]))
        top_score = ranked[0][1]
        top = tuple(chain_id for chain_id, score in ranked if score == top_score)
        return self._pick_or_raise(snapshot, q, top)

    def _pick_or_raise(self, snapshot: NetworkSnapshot, q: str, chain_ids: Tuple[int, ...]) -> NetworkDefinition:
        if len(chain_ids) == 1:
            return snapshot.by_id[chain_ids[0]]

        previews = []
        for chain_id in sorted(chain_ids)[:10]:
            definition = snapshot.by_id.get(chain_id)
            if definition:
                previews.append(f"{definition.name} (chainid={definition.id})")

        raise ValueError(
            f"Ambiguous network query '{q}'. Candidates: "
            + "; ".join(previews)
            + ". Please pass a numeric chainid."
        )
