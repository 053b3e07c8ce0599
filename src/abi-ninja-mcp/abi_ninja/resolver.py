"""
ABI resolution pipeline.

Per call: cache lookup, proxy detection, then the automatic sources in order
(ABI directory, block explorer). When both fail the caller gets
``AllSourcesExhausted`` and may continue with a manual ABI
(:meth:`AbiResolver.provide_abi`) or an explicit decompilation
(:meth:`AbiResolver.decompile`).

Sources are queried one after another: each is a metered third-party API and
the later ones are wasted quota once an earlier one answers.
"""

from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional, Sequence, TypeVar

from .abi import parse_abi_text
from .cache import AbiCache, AbiCacheEntry, cache_key
from .chains import ChainRegistry
from .exceptions import AllSourcesExhausted, SourceAttempt, SourceError
from .logging import get_logger
from .proxy import ChainReader, ProxyDetector, ProxyRecord, normalize_address
from .rpc_pool import RpcClientPool
from .sources import AbiSource, AbiSourceKind

logger = get_logger("resolver")

T = TypeVar("T")

EMPTY_BYTECODE = {"", "0x", "0x0"}


@dataclass(frozen=True)
class Resolution:
    address: str
    chain_id: int
    abi: List[Dict[str, Any]]
    source: AbiSourceKind
    implementation_address: Optional[str] = None
    proxy: Optional[ProxyRecord] = None
    cached: bool = False

    @classmethod
    def from_entry(cls, entry: AbiCacheEntry, cached: bool, proxy: Optional[ProxyRecord] = None) -> "Resolution":
        return cls(
            address=entry.address,
            chain_id=entry.chain_id,
            abi=entry.abi,
            source=entry.source,
            implementation_address=proxy.implementation_address if proxy else None,
            proxy=proxy,
            cached=cached,
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "address": self.address,
            "chain_id": self.chain_id,
            "source": self.source.value,
            "cached": self.cached,
            "implementation_address": self.implementation_address,
            "proxy": self.proxy.as_dict() if self.proxy else None,
            "abi": self.abi,
        }


class RequestGate:
    """
    Monotonic request fingerprints for a single caller context.

    Each submission supersedes the previous one; a result (or error) that
    arrives for a superseded fingerprint is discarded and reported as None.
    """

    def __init__(self) -> None:
        self._counter = itertools.count(1)
        self._current = 0

    @property
    def current(self) -> int:
        return self._current

    def issue(self) -> int:
        self._current = next(self._counter)
        return self._current

    def is_current(self, fingerprint: int) -> bool:
        return fingerprint == self._current

    async def submit(self, awaitable: Awaitable[T]) -> Optional[T]:
        fingerprint = self.issue()
        try:
            result = await awaitable
        except Exception:
            if not self.is_current(fingerprint):
                logger.debug("Discarding error from superseded request %d.", fingerprint)
                return None
            raise
        if not self.is_current(fingerprint):
            logger.debug("Discarding result from superseded request %d.", fingerprint)
            return None
        return result


class AbiResolver:
    def __init__(
        self,
        registry: ChainRegistry,
        pool: RpcClientPool,
        cache: AbiCache,
        sources: Sequence[AbiSource],
        decompiler: Optional[AbiSource] = None,
        detector: Optional[ProxyDetector] = None,
        manual_only_chain_ids: FrozenSet[int] = frozenset(),
    ) -> None:
        self._registry = registry
        self._pool = pool
        self._cache = cache
        self._sources = list(sources)
        self._decompiler = decompiler
        self._detector = detector or ProxyDetector()
        self._manual_only = frozenset(manual_only_chain_ids)
        self._inflight: Dict[str, "asyncio.Future[Resolution]"] = {}

    async def resolve(self, address: str, chain_id: int, abi_text: Optional[str] = None) -> Resolution:
        """
        Resolve the ABI for ``address`` on ``chain_id``.

        ``abi_text`` short-circuits the pipeline with a manual override.
        Concurrent calls for the same key share one pipeline run.
        """
        if abi_text is not None:
            return await self.provide_abi(address, chain_id, abi_text)

        normalized = normalize_address(address)
        chain_id = int(chain_id)
        return await self._coalesce(
            cache_key(normalized, chain_id),
            lambda: self._run_pipeline(normalized, chain_id),
        )

    async def provide_abi(self, address: str, chain_id: int, abi_text: str) -> Resolution:
        normalized = normalize_address(address)
        chain_id = int(chain_id)
        self._registry.get_by_id(chain_id)
        abi = parse_abi_text(abi_text)

        entry = AbiCacheEntry(address=normalized, chain_id=chain_id, abi=abi, source=AbiSourceKind.USER_PROVIDED)
        await self._write(entry)
        logger.info("Stored user-provided ABI for %s on chain %s.", normalized, chain_id)
        return Resolution.from_entry(entry, cached=False)

    async def decompile(self, address: str, chain_id: int) -> Resolution:
        if self._decompiler is None:
            raise RuntimeError("No decompiler source configured.")

        normalized = normalize_address(address)
        chain_id = int(chain_id)
        return await self._coalesce(
            "decompile:" + cache_key(normalized, chain_id),
            lambda: self._run_decompiler(normalized, chain_id),
        )

    async def clear(self, address: str, chain_id: int) -> bool:
        return await self._cache.remove(normalize_address(address), int(chain_id))

    async def detect_proxy(self, address: str, chain_id: int) -> ProxyRecord:
        handle = self._pool.client_for(int(chain_id))
        return await self._detector.detect(address, handle)

    async def _coalesce(self, key: str, start: Callable[[], Awaitable[Resolution]]) -> Resolution:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(start())
            self._inflight[key] = task
            task.add_done_callback(lambda done, key=key: self._forget(key, done))
        else:
            logger.debug("Attaching to in-flight resolution %s.", key)
        # shield: one caller giving up must not cancel the shared run
        return await asyncio.shield(task)

    def _forget(self, key: str, task: "asyncio.Future[Resolution]") -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # mark the outcome retrieved even if every waiter went away
            task.exception()

    async def _run_pipeline(self, address: str, chain_id: int) -> Resolution:
        cached = await self._cache.get(address, chain_id)
        if cached is not None:
            logger.debug("Cache hit for %s on chain %s (%s).", address, chain_id, cached.source.value)
            return Resolution.from_entry(cached, cached=True)

        self._registry.get_by_id(chain_id)
        if chain_id in self._manual_only:
            raise AllSourcesExhausted(address, chain_id, [], is_contract=None)

        handle = self._pool.client_for(chain_id)
        proxy = await self._detector.detect(address, handle)
        target = proxy.implementation_address or address
        if proxy.is_proxy:
            logger.info(
                "%s on chain %s is a proxy (%s) for %s.",
                address,
                chain_id,
                proxy.detection_method.value,
                target,
            )

        attempts: List[SourceAttempt] = []
        for source in self._sources:
            try:
                abi = await source.fetch(target, chain_id)
            except SourceError as exc:
                logger.warning("ABI source %s failed for %s on chain %s: %s", source.name, target, chain_id, exc.message)
                attempts.append(SourceAttempt(source.name, exc))
                continue

            entry = AbiCacheEntry(address=address, chain_id=chain_id, abi=abi, source=source.kind)
            stored = await self._write_automatic(entry)
            return Resolution.from_entry(stored, cached=stored is not entry, proxy=proxy)

        raise AllSourcesExhausted(address, chain_id, attempts, is_contract=await self._is_contract(address, handle))

    async def _run_decompiler(self, address: str, chain_id: int) -> Resolution:
        self._registry.get_by_id(chain_id)
        handle = self._pool.client_for(chain_id)
        proxy = await self._detector.detect(address, handle)
        target = proxy.implementation_address or address

        try:
            abi = await self._decompiler.fetch(target, chain_id)
        except SourceError as exc:
            logger.warning("Decompiler failed for %s on chain %s: %s", target, chain_id, exc.message)
            raise AllSourcesExhausted(
                address,
                chain_id,
                [SourceAttempt(self._decompiler.name, exc)],
                is_contract=await self._is_contract(address, handle),
            ) from exc

        entry = AbiCacheEntry(address=address, chain_id=chain_id, abi=abi, source=AbiSourceKind.DECOMPILER)
        await self._write(entry)
        return Resolution.from_entry(entry, cached=False, proxy=proxy)

    async def _write_automatic(self, entry: AbiCacheEntry) -> AbiCacheEntry:
        """Cache an automatically sourced ABI unless the user supplied one meanwhile."""
        try:
            return await self._cache.set_unless_user_provided(entry)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Could not cache ABI for %s on chain %s: %s", entry.address, entry.chain_id, exc)
            return entry

    async def _write(self, entry: AbiCacheEntry) -> None:
        try:
            await self._cache.set(entry)
        except Exception as exc:  # pylint: disable=broad-except
            logger.warning("Could not cache ABI for %s on chain %s: %s", entry.address, entry.chain_id, exc)

    async def _is_contract(self, address: str, handle: ChainReader) -> Optional[bool]:
        try:
            code = await handle.get_bytecode(address)
        except Exception as exc:  # pylint: disable=broad-except
            logger.debug("Bytecode check failed for %s: %s", address, exc)
            return None
        return isinstance(code, str) and code.strip().lower() not in EMPTY_BYTECODE
