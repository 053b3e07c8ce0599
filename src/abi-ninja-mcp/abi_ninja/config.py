import os
from dataclasses import dataclass, field
from typing import FrozenSet, Optional

DEFAULT_ETHERSCAN_BASE_URL = "https://api.etherscan.io/v2/api"
DEFAULT_ABI_DIRECTORY_URL = "https://anyabi.xyz/api/get-abi"
DEFAULT_DECOMPILER_URL = "https://heimdall-api.fly.dev"

# Chains with no public explorer or directory coverage; ABIs must be supplied by hand.
DEFAULT_MANUAL_ONLY_CHAIN_IDS = frozenset({31337})

_TRUTHY = {"1", "true", "yes", "on"}


@dataclass
class Config:
    etherscan_api_key: Optional[str] = None
    etherscan_base_url: str = DEFAULT_ETHERSCAN_BASE_URL
    abi_directory_url: str = DEFAULT_ABI_DIRECTORY_URL
    decompiler_url: str = DEFAULT_DECOMPILER_URL
    store_path: Optional[str] = None
    request_timeout: int = 10
    max_retries: int = 3
    backoff_seconds: float = 0.5
    rpc_failover: bool = True
    only_local_burner_wallet: bool = True
    polling_interval_ms: int = 30000
    manual_only_chain_ids: FrozenSet[int] = field(default_factory=lambda: DEFAULT_MANUAL_ONLY_CHAIN_IDS)
    log_level: str = "INFO"


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUTHY


def _parse_chain_ids(raw: Optional[str]) -> FrozenSet[int]:
    if raw is None:
        return DEFAULT_MANUAL_ONLY_CHAIN_IDS

    ids = set()
    for part in raw.split(","):
        candidate = part.strip()
        if not candidate:
            continue
        if not candidate.isdigit():
            raise ValueError(f"MANUAL_ONLY_CHAIN_IDS entries must be numeric chain ids, got '{candidate}'.")
        ids.add(int(candidate))
    return frozenset(ids)


def load_config() -> Config:
    """Load configuration from environment variables."""
    api_key = os.getenv("ETHERSCAN_API_KEY")
    store_path = os.getenv("ABI_NINJA_STORE_PATH")

    return Config(
        etherscan_api_key=api_key.strip() if api_key and api_key.strip() else None,
        etherscan_base_url=os.getenv("ETHERSCAN_BASE_URL", DEFAULT_ETHERSCAN_BASE_URL).rstrip("/"),
        abi_directory_url=os.getenv("ABI_DIRECTORY_URL", DEFAULT_ABI_DIRECTORY_URL).rstrip("/"),
        decompiler_url=os.getenv("DECOMPILER_URL", DEFAULT_DECOMPILER_URL).rstrip("/"),
        store_path=store_path.strip() if store_path and store_path.strip() else None,
        request_timeout=int(os.getenv("REQUEST_TIMEOUT", "10")),
        max_retries=int(os.getenv("REQUEST_RETRIES", "3")),
        backoff_seconds=float(os.getenv("REQUEST_BACKOFF_SECONDS", "0.5")),
        rpc_failover=_env_flag("RPC_FAILOVER", True),
        only_local_burner_wallet=_env_flag("ONLY_LOCAL_BURNER_WALLET", True),
        polling_interval_ms=int(os.getenv("POLLING_INTERVAL_MS", "30000")),
        manual_only_chain_ids=_parse_chain_ids(os.getenv("MANUAL_ONLY_CHAIN_IDS")),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
