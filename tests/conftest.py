import asyncio
from typing import Any, Dict, List, Optional

import pytest

from abi_ninja.chains import ChainRegistry
from abi_ninja.config import Config
from abi_ninja.exceptions import SourceError
from abi_ninja.sources import AbiSource, AbiSourceKind
from abi_ninja.store import InMemoryStore, KeyValueStore

ZERO_WORD = "0x" + "0" * 64

SAMPLE_ABI = [
    {
        "type": "function",
        "name": "balanceOf",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
    },
    {
        "type": "function",
        "name": "transfer",
        "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
    },
    {
        "type": "event",
        "name": "Transfer",
        "inputs": [
            {"name": "from", "type": "address", "indexed": True},
            {"name": "to", "type": "address", "indexed": True},
            {"name": "value", "type": "uint256", "indexed": False},
        ],
    },
]


class FakeChainReader:
    """Async chain reader with canned storage words and bytecode."""

    def __init__(
        self,
        storage: Optional[Dict[str, str]] = None,
        bytecode: str = "0x6080",
        fail_storage: bool = False,
        fail_bytecode: bool = False,
    ) -> None:
        self.storage = {slot.lower(): word for slot, word in (storage or {}).items()}
        self.bytecode = bytecode
        self.fail_storage = fail_storage
        self.fail_bytecode = fail_bytecode
        self.calls: List[tuple] = []

    async def get_storage_at(self, address: str, slot: str) -> str:
        self.calls.append(("storage", address, slot))
        if self.fail_storage:
            raise ConnectionError("storage read failed")
        return self.storage.get(slot.lower(), ZERO_WORD)

    async def get_bytecode(self, address: str) -> str:
        self.calls.append(("code", address))
        if self.fail_bytecode:
            raise ConnectionError("code read failed")
        return self.bytecode


class FakeRpcClient:
    """Synchronous stand-in for RpcClient used behind pool handles."""

    def __init__(self, rpc_urls: List[str], reader: Optional[FakeChainReader] = None) -> None:
        self.rpc_urls = list(rpc_urls)
        self.reader = reader or FakeChainReader()

    def get_storage_at(self, address: str, slot: str, tag: str = "latest") -> str:
        if self.reader.fail_storage:
            raise ConnectionError("storage read failed")
        return self.reader.storage.get(slot.lower(), ZERO_WORD)

    def get_code(self, address: str, tag: str = "latest") -> str:
        if self.reader.fail_bytecode:
            raise ConnectionError("code read failed")
        return self.reader.bytecode


class FakeSource(AbiSource):
    """Scripted ABI source; each fetch pops the next outcome (ABI list or SourceError)."""

    def __init__(self, kind: AbiSourceKind, outcomes: Optional[List[Any]] = None, gate: Optional[asyncio.Event] = None):
        self.kind = kind
        self.outcomes = list(outcomes or [])
        self.gate = gate
        self.calls: List[tuple] = []

    async def fetch(self, address: str, chain_id: int) -> List[Dict[str, Any]]:
        self.calls.append((address, chain_id))
        if self.gate is not None:
            await self.gate.wait()
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, SourceError):
            raise outcome
        return outcome


class FailingStore(KeyValueStore):
    async def get(self, key: str) -> Optional[Any]:
        raise OSError("disk unavailable")

    async def set(self, key: str, value: Any) -> None:
        raise OSError("disk unavailable")

    async def delete(self, key: str) -> bool:
        raise OSError("disk unavailable")


def custom_network(chain_id: int = 424242, name: str = "Ninja Devnet", rpc_url: str = "https://rpc.ninja.test"):
    return {
        "id": chain_id,
        "name": name,
        "native_currency": {"name": "Ninja", "symbol": "NJA", "decimals": 18},
        "rpc_urls": [rpc_url],
        "is_testnet": True,
    }


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def registry(store):
    return ChainRegistry(store)


@pytest.fixture
def config():
    return Config(max_retries=1, backoff_seconds=0.0)
