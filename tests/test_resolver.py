"""
Tests for AbiResolver: source fallback, caching, proxy following, manual
overrides, decompilation and in-flight coalescing.
"""

import asyncio
import json

import pytest

from abi_ninja.cache import AbiCache
from abi_ninja.exceptions import (
    AbiNotFound,
    AllSourcesExhausted,
    InvalidAbiFormat,
    NetworkError,
    NotVerified,
    UnknownChain,
)
from abi_ninja.proxy import EIP1967_IMPLEMENTATION_SLOT, DetectionMethod
from abi_ninja.resolver import AbiResolver, RequestGate
from abi_ninja.rpc_pool import RpcClientPool
from abi_ninja.sources import AbiSourceKind
from abi_ninja.store import InMemoryStore

from conftest import SAMPLE_ABI, FakeChainReader, FakeRpcClient, FakeSource, custom_network

ADDRESS = "0xDEADbeefDEADbeefDEADbeefDEADbeefDEADbeef"
LOWER = ADDRESS.lower()
IMPLEMENTATION = "0x" + "ab" * 20
OVERRIDE_ABI = [{"type": "function", "name": "custom", "inputs": [], "outputs": [], "stateMutability": "view"}]


class SlowWriteStore(InMemoryStore):
    """Yields to the event loop on every write, like the file-backed store."""

    def __init__(self):
        super().__init__()
        self._lock = asyncio.Lock()

    async def set(self, key, value):
        async with self._lock:
            await asyncio.sleep(0.01)
            await super().set(key, value)


def directory(*outcomes, gate=None):
    return FakeSource(AbiSourceKind.ABI_DIRECTORY, list(outcomes), gate=gate)


def explorer(*outcomes):
    return FakeSource(AbiSourceKind.BLOCK_EXPLORER, list(outcomes))


def make_resolver(registry, store, sources, decompiler=None, reader=None, manual_only=frozenset()):
    reader = reader or FakeChainReader()
    pool = RpcClientPool(registry, client_factory=lambda urls: FakeRpcClient(urls, reader))
    cache = AbiCache(store)
    registry.subscribe(pool.on_registry_changed)
    registry.subscribe(cache.on_registry_changed)
    resolver = AbiResolver(
        registry,
        pool,
        cache,
        sources=sources,
        decompiler=decompiler,
        manual_only_chain_ids=manual_only,
    )
    return resolver, cache


@pytest.mark.asyncio
async def test_directory_hit_is_returned_and_cached(registry, store):
    first = directory(SAMPLE_ABI)
    second = explorer(AbiNotFound("blockExplorer", "unused"))
    resolver, _ = make_resolver(registry, store, [first, second])

    resolution = await resolver.resolve(ADDRESS, 1)

    assert resolution.source is AbiSourceKind.ABI_DIRECTORY
    assert resolution.abi == SAMPLE_ABI
    assert resolution.cached is False
    assert resolution.address == LOWER
    assert second.calls == []

    stored = await store.get(f"abi:{LOWER}_1")
    assert stored["abi"] == SAMPLE_ABI
    assert stored["source"] == "abiDirectory"


@pytest.mark.asyncio
async def test_all_sources_failing_reports_each_attempt(registry, store):
    resolver, cache = make_resolver(
        registry,
        store,
        [
            directory(NetworkError("abiDirectory", "timed out")),
            explorer(NotVerified("blockExplorer", "not verified")),
        ],
    )

    with pytest.raises(AllSourcesExhausted) as exc_info:
        await resolver.resolve(ADDRESS, 1)

    exhausted = exc_info.value
    assert [(a.source, a.reason) for a in exhausted.attempts] == [
        ("abiDirectory", "NetworkError"),
        ("blockExplorer", "NotVerified"),
    ]
    assert exhausted.is_contract is True
    assert await cache.get(ADDRESS, 1) is None


@pytest.mark.asyncio
async def test_second_resolve_is_served_from_cache(registry, store):
    source = directory(SAMPLE_ABI)
    resolver, _ = make_resolver(registry, store, [source])

    first = await resolver.resolve(ADDRESS, 1)
    second = await resolver.resolve(ADDRESS.lower(), 1)

    assert second.cached is True
    assert second.abi == first.abi
    assert second.source is first.source
    assert len(source.calls) == 1


@pytest.mark.asyncio
async def test_concurrent_resolves_share_one_pipeline(registry, store):
    gate = asyncio.Event()
    source = directory(SAMPLE_ABI, gate=gate)
    resolver, _ = make_resolver(registry, store, [source])

    pending = [asyncio.ensure_future(resolver.resolve(ADDRESS, 1)) for _ in range(5)]
    await asyncio.sleep(0)
    gate.set()
    results = await asyncio.gather(*pending)

    assert len(source.calls) == 1
    assert all(result.abi == SAMPLE_ABI for result in results)


@pytest.mark.asyncio
async def test_cancelled_waiter_does_not_cancel_shared_run(registry, store):
    gate = asyncio.Event()
    source = directory(SAMPLE_ABI, gate=gate)
    resolver, cache = make_resolver(registry, store, [source])

    impatient = asyncio.ensure_future(resolver.resolve(ADDRESS, 1))
    patient = asyncio.ensure_future(resolver.resolve(ADDRESS, 1))
    await asyncio.sleep(0)
    impatient.cancel()
    gate.set()

    result = await patient
    assert result.source is AbiSourceKind.ABI_DIRECTORY
    assert await cache.get(ADDRESS, 1) is not None


@pytest.mark.asyncio
async def test_proxy_implementation_is_queried(registry, store):
    reader = FakeChainReader(storage={EIP1967_IMPLEMENTATION_SLOT: "0x" + "0" * 24 + IMPLEMENTATION[2:]})
    first = directory(AbiNotFound("abiDirectory", "missing"))
    second = explorer(SAMPLE_ABI)
    resolver, cache = make_resolver(registry, store, [first, second], reader=reader)

    resolution = await resolver.resolve(ADDRESS, 1)

    assert first.calls == [(IMPLEMENTATION, 1)]
    assert second.calls == [(IMPLEMENTATION, 1)]
    assert resolution.implementation_address == IMPLEMENTATION
    assert resolution.proxy.detection_method is DetectionMethod.EIP1967_SLOT
    # cached under the address the user asked for
    assert (await cache.get(ADDRESS, 1)).source is AbiSourceKind.BLOCK_EXPLORER
    assert await cache.get(IMPLEMENTATION, 1) is None


@pytest.mark.asyncio
async def test_failed_proxy_detection_still_resolves(registry, store):
    reader = FakeChainReader(fail_storage=True, fail_bytecode=True)
    source = directory(SAMPLE_ABI)
    resolver, _ = make_resolver(registry, store, [source], reader=reader)

    resolution = await resolver.resolve(ADDRESS, 1)

    assert source.calls == [(LOWER, 1)]
    assert resolution.proxy.detection_method is DetectionMethod.NONE


@pytest.mark.asyncio
async def test_unknown_chain(registry, store):
    source = directory(SAMPLE_ABI)
    resolver, _ = make_resolver(registry, store, [source])

    with pytest.raises(UnknownChain):
        await resolver.resolve(ADDRESS, 999999999)
    assert source.calls == []


@pytest.mark.asyncio
async def test_manual_only_chain_skips_automatic_sources(registry, store):
    source = directory(SAMPLE_ABI)
    resolver, _ = make_resolver(registry, store, [source], manual_only=frozenset({31337}))

    with pytest.raises(AllSourcesExhausted) as exc_info:
        await resolver.resolve(ADDRESS, 31337)

    assert exc_info.value.attempts == []
    assert source.calls == []


@pytest.mark.asyncio
async def test_address_without_bytecode_is_flagged(registry, store):
    reader = FakeChainReader(bytecode="0x")
    resolver, _ = make_resolver(registry, store, [directory(AbiNotFound("abiDirectory", "missing"))], reader=reader)

    with pytest.raises(AllSourcesExhausted) as exc_info:
        await resolver.resolve(ADDRESS, 1)

    assert exc_info.value.is_contract is False


@pytest.mark.asyncio
async def test_provide_abi_replaces_cached_entry(registry, store):
    resolver, cache = make_resolver(registry, store, [directory(SAMPLE_ABI)])
    await resolver.resolve(ADDRESS, 1)

    resolution = await resolver.provide_abi(ADDRESS, 1, json.dumps(OVERRIDE_ABI))

    assert resolution.source is AbiSourceKind.USER_PROVIDED
    cached = await resolver.resolve(ADDRESS, 1)
    assert cached.cached is True
    assert cached.abi == OVERRIDE_ABI


@pytest.mark.asyncio
async def test_resolve_with_abi_text_is_an_override(registry, store):
    source = directory(SAMPLE_ABI)
    resolver, _ = make_resolver(registry, store, [source])

    resolution = await resolver.resolve(ADDRESS, 1, abi_text=json.dumps(OVERRIDE_ABI))

    assert resolution.source is AbiSourceKind.USER_PROVIDED
    assert source.calls == []


@pytest.mark.asyncio
async def test_invalid_override_leaves_cache_untouched(registry, store):
    resolver, cache = make_resolver(registry, store, [directory(SAMPLE_ABI)])
    await resolver.resolve(ADDRESS, 1)

    with pytest.raises(InvalidAbiFormat):
        await resolver.provide_abi(ADDRESS, 1, "[{broken")

    assert (await cache.get(ADDRESS, 1)).abi == SAMPLE_ABI


@pytest.mark.asyncio
async def test_override_on_unknown_chain_is_rejected(registry, store):
    resolver, _ = make_resolver(registry, store, [])

    with pytest.raises(UnknownChain):
        await resolver.provide_abi(ADDRESS, 999999999, json.dumps(OVERRIDE_ABI))


@pytest.mark.asyncio
async def test_override_wins_over_in_flight_resolution(registry, store):
    gate = asyncio.Event()
    resolver, cache = make_resolver(registry, store, [directory(SAMPLE_ABI, gate=gate)])

    pending = asyncio.ensure_future(resolver.resolve(ADDRESS, 1))
    await asyncio.sleep(0)
    await resolver.provide_abi(ADDRESS, 1, json.dumps(OVERRIDE_ABI))
    gate.set()
    result = await pending

    entry = await cache.get(ADDRESS, 1)
    assert entry.source is AbiSourceKind.USER_PROVIDED
    assert entry.abi == OVERRIDE_ABI
    assert result.abi == OVERRIDE_ABI


@pytest.mark.asyncio
async def test_override_wins_when_store_yields_on_write(registry):
    store = SlowWriteStore()
    gate = asyncio.Event()
    source = directory(SAMPLE_ABI, gate=gate)
    resolver, cache = make_resolver(registry, store, [source])

    pending = asyncio.ensure_future(resolver.resolve(ADDRESS, 1))
    while not source.calls:
        await asyncio.sleep(0.001)
    manual = asyncio.ensure_future(resolver.provide_abi(ADDRESS, 1, json.dumps(OVERRIDE_ABI)))
    await asyncio.sleep(0)
    gate.set()
    result, _ = await asyncio.gather(pending, manual)

    entry = await cache.get(ADDRESS, 1)
    assert entry.source is AbiSourceKind.USER_PROVIDED
    assert entry.abi == OVERRIDE_ABI
    assert result.source is AbiSourceKind.USER_PROVIDED


@pytest.mark.asyncio
async def test_decompile_stores_result(registry, store):
    decompiler = FakeSource(AbiSourceKind.DECOMPILER, [OVERRIDE_ABI])
    resolver, cache = make_resolver(registry, store, [], decompiler=decompiler)

    resolution = await resolver.decompile(ADDRESS, 1)

    assert resolution.source is AbiSourceKind.DECOMPILER
    assert (await cache.get(ADDRESS, 1)).source is AbiSourceKind.DECOMPILER


@pytest.mark.asyncio
async def test_decompile_failure_is_reported(registry, store):
    decompiler = FakeSource(AbiSourceKind.DECOMPILER, [AbiNotFound("decompiler", "no bytecode")])
    resolver, cache = make_resolver(registry, store, [], decompiler=decompiler)

    with pytest.raises(AllSourcesExhausted) as exc_info:
        await resolver.decompile(ADDRESS, 1)

    assert [a.source for a in exc_info.value.attempts] == ["decompiler"]
    assert await cache.get(ADDRESS, 1) is None


@pytest.mark.asyncio
async def test_removing_network_purges_its_cache(registry, store):
    resolver, cache = make_resolver(registry, store, [directory(SAMPLE_ABI)])
    await registry.add_custom_network(custom_network())
    await resolver.resolve(ADDRESS, 424242)
    await resolver.resolve(ADDRESS, 1)

    await registry.remove_custom_network(424242)

    assert await cache.get(ADDRESS, 424242) is None
    assert await cache.get(ADDRESS, 1) is not None
    with pytest.raises(UnknownChain):
        await resolver.resolve(ADDRESS, 424242)


@pytest.mark.asyncio
async def test_cache_write_failure_does_not_fail_resolution(registry):
    store = InMemoryStore()

    async def broken_set(key, value):
        raise OSError("disk full")

    store.set = broken_set
    resolver, cache = make_resolver(registry, store, [directory(SAMPLE_ABI)])

    resolution = await resolver.resolve(ADDRESS, 1)
    assert resolution.abi == SAMPLE_ABI
    assert resolution.source is AbiSourceKind.ABI_DIRECTORY
    assert await cache.get(ADDRESS, 1) is None

    manual = await resolver.provide_abi(ADDRESS, 1, json.dumps(OVERRIDE_ABI))
    assert manual.abi == OVERRIDE_ABI


@pytest.mark.asyncio
async def test_clear_removes_entry(registry, store):
    resolver, cache = make_resolver(registry, store, [directory(SAMPLE_ABI)])
    await resolver.resolve(ADDRESS, 1)

    assert await resolver.clear(ADDRESS, 1) is True
    assert await cache.get(ADDRESS, 1) is None


@pytest.mark.asyncio
async def test_request_gate_discards_superseded_results():
    gate = RequestGate()
    slow_release = asyncio.Event()

    async def slow():
        await slow_release.wait()
        return "old"

    async def fast():
        return "new"

    stale = asyncio.ensure_future(gate.submit(slow()))
    await asyncio.sleep(0)
    fresh = await gate.submit(fast())
    slow_release.set()

    assert fresh == "new"
    assert await stale is None
    assert gate.current == 2


@pytest.mark.asyncio
async def test_request_gate_discards_superseded_errors():
    gate = RequestGate()
    release = asyncio.Event()

    async def failing():
        await release.wait()
        raise RuntimeError("late failure")

    stale = asyncio.ensure_future(gate.submit(failing()))
    await asyncio.sleep(0)
    gate.issue()
    release.set()

    assert await stale is None


@pytest.mark.asyncio
async def test_request_gate_propagates_current_errors():
    gate = RequestGate()

    async def failing():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        await gate.submit(failing())
