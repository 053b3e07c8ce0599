"""
Exception hierarchy for abi_ninja.

Per-source failures (SourceError subclasses) are caught by the resolver and
recorded as attempts; only AllSourcesExhausted reaches the caller. Registry
misuse (Conflict, UnknownChain, ...) propagates immediately.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional


class AbiNinjaError(Exception):
    """Base exception for all abi_ninja errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class InvalidAddress(AbiNinjaError, ValueError):
    """Address is not 0x-prefixed 40 hex characters."""


class InvalidNetworkDefinition(AbiNinjaError, ValueError):
    """A custom network definition failed validation."""


class UnknownChain(AbiNinjaError):
    """The chain registry has no definition for the requested chain id."""

    def __init__(self, chain_id: Any) -> None:
        super().__init__(f"Unknown chain id {chain_id}.", {"chain_id": chain_id})
        self.chain_id = chain_id


class NetworkNotFound(AbiNinjaError):
    """Removal of a chain id that is not a custom network."""

    def __init__(self, chain_id: int) -> None:
        super().__init__(f"No custom network with chain id {chain_id}.", {"chain_id": chain_id})
        self.chain_id = chain_id


class BuiltinNetworkError(NetworkNotFound):
    """Builtin networks cannot be removed."""

    def __init__(self, chain_id: int) -> None:
        AbiNinjaError.__init__(
            self,
            f"Chain id {chain_id} is a builtin network and cannot be removed.",
            {"chain_id": chain_id},
        )
        self.chain_id = chain_id


class Conflict(AbiNinjaError):
    """A network with the same chain id is already registered."""

    def __init__(self, chain_id: int, existing_name: Optional[str] = None) -> None:
        message = f"Chain id {chain_id} is already registered"
        if existing_name:
            message += f" as '{existing_name}'"
        super().__init__(message + ".", {"chain_id": chain_id})
        self.chain_id = chain_id
        self.existing_name = existing_name


class InvalidAbiFormat(AbiNinjaError, ValueError):
    """User-supplied ABI text is not valid JSON or not ABI-shaped."""


class SourceError(AbiNinjaError):
    """Base for failures reported by a single ABI source."""

    kind = "SourceError"

    def __init__(self, source: str, message: str) -> None:
        super().__init__(message, {"source": source})
        self.source = source


class NetworkError(SourceError):
    """Source unreachable, timed out, rate limited or answered with a server error."""

    kind = "NetworkError"


class NotVerified(SourceError):
    """Source reports that the contract has no published ABI."""

    kind = "NotVerified"


class AbiNotFound(SourceError):
    """Source has no ABI for the address."""

    kind = "NotFound"


class InvalidSourceResponse(SourceError):
    """Source answered, but the payload is not a usable ABI."""

    kind = "InvalidResponse"


@dataclass(frozen=True)
class SourceAttempt:
    source: str
    error: SourceError

    @property
    def reason(self) -> str:
        return self.error.kind

    def as_dict(self) -> Dict[str, str]:
        return {"source": self.source, "reason": self.reason, "message": self.error.message}


class AllSourcesExhausted(AbiNinjaError):
    """
    Every automatic source failed and no manual ABI was supplied.

    Callers are expected to offer manual ABI entry or decompilation.
    ``is_contract`` is False when the address holds no bytecode on the chain,
    None when that could not be determined.
    """

    def __init__(
        self,
        address: str,
        chain_id: int,
        attempts: List[SourceAttempt],
        is_contract: Optional[bool] = None,
    ) -> None:
        if attempts:
            summary = ", ".join(f"{a.source}: {a.reason}" for a in attempts)
        else:
            summary = "no automatic sources for this chain"
        super().__init__(
            f"Could not resolve ABI for {address} on chain {chain_id} ({summary}).",
            {"address": address, "chain_id": chain_id},
        )
        self.address = address
        self.chain_id = chain_id
        self.attempts = list(attempts)
        self.is_contract = is_contract

    def as_dict(self) -> Dict[str, Any]:
        return {
            "error": "AllSourcesExhausted",
            "address": self.address,
            "chain_id": self.chain_id,
            "attempts": [a.as_dict() for a in self.attempts],
            "is_contract": self.is_contract,
        }
