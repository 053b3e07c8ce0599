"""
Proxy target detection.

Methods are tried in a fixed order and the first match wins:

1. EIP-1967 implementation slot
2. EIP-1167 minimal proxy runtime bytecode
3. legacy OpenZeppelin (zos) implementation slot

An RPC failure while probing one method only means "no match" for that
method; detection never raises because of the node.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Protocol

from .exceptions import InvalidAddress
from .logging import get_logger

logger = get_logger("proxy")

ADDRESS_PATTERN = re.compile(r"^0x[a-fA-F0-9]{40}$")

# keccak256("eip1967.proxy.implementation") - 1
EIP1967_IMPLEMENTATION_SLOT = "0x360894a13ba1a3210667c828492db98dca3e2076cc3735a920a3ca505d382bbc"
# keccak256("org.zeppelinos.proxy.implementation")
OZ_LEGACY_IMPLEMENTATION_SLOT = "0x7050c9e0f4ca769c69bd3a8ef740bc37934f8e2c036e5a723fd8ee048ed3f8c3"

# 45-byte runtime: prefix (10 bytes) + implementation (20 bytes) + suffix (15 bytes)
EIP1167_PREFIX = "363d3d373d3d3d363d73"
EIP1167_SUFFIX = "5af43d82803e903d91602b57fd5bf3"
EIP1167_LENGTH = 45


class DetectionMethod(str, Enum):
    EIP1967_SLOT = "eip1967Slot"
    EIP1167_BYTECODE = "eip1167Bytecode"
    OZ_LEGACY_SLOT = "ozLegacySlot"
    NONE = "none"


@dataclass(frozen=True)
class ProxyRecord:
    proxy_address: str
    implementation_address: Optional[str]
    detection_method: DetectionMethod

    @property
    def is_proxy(self) -> bool:
        return self.detection_method is not DetectionMethod.NONE

    def as_dict(self) -> dict:
        return {
            "proxy_address": self.proxy_address,
            "implementation_address": self.implementation_address,
            "detection_method": self.detection_method.value,
            "is_proxy": self.is_proxy,
        }


class ChainReader(Protocol):
    async def get_storage_at(self, address: str, slot: str) -> str:
        ...

    async def get_bytecode(self, address: str) -> str:
        ...


def normalize_address(address: Any) -> str:
    if not isinstance(address, str):
        raise InvalidAddress("Address must be a string.")

    candidate = address.strip()
    if not candidate.startswith("0x"):
        candidate = f"0x{candidate}"

    if not ADDRESS_PATTERN.match(candidate):
        raise InvalidAddress("Invalid address format. Expected 0x-prefixed 40 hex characters.")

    return candidate.lower()


def _strip_hex(value: str) -> str:
    text = value.strip().lower()
    return text[2:] if text.startswith("0x") else text


def storage_word_to_address(word: Optional[str]) -> Optional[str]:
    """Low 20 bytes of a storage word, or None when the slot is empty."""
    if not word or not isinstance(word, str):
        return None
    body = _strip_hex(word)
    if not body:
        return None
    if len(body) > 64:
        raise ValueError("Storage word exceeds 32 bytes.")
    body = body.rjust(64, "0")
    try:
        int(body, 16)
    except ValueError as exc:
        raise ValueError("Invalid storage word returned from RPC.") from exc
    tail = body[-40:]
    if int(tail, 16) == 0:
        return None
    return f"0x{tail}"


def minimal_proxy_target(bytecode: Optional[str]) -> Optional[str]:
    """Embedded address if ``bytecode`` is exactly the EIP-1167 runtime template."""
    if not bytecode or not isinstance(bytecode, str):
        return None
    body = _strip_hex(bytecode)
    if len(body) != EIP1167_LENGTH * 2:
        return None
    if not body.startswith(EIP1167_PREFIX) or not body.endswith(EIP1167_SUFFIX):
        return None
    target = body[len(EIP1167_PREFIX) : len(EIP1167_PREFIX) + 40]
    try:
        int(target, 16)
    except ValueError:
        return None
    return f"0x{target}"


class ProxyDetector:
    async def detect(self, address: str, client: ChainReader) -> ProxyRecord:
        normalized = normalize_address(address)
        failures = 0

        try:
            implementation = storage_word_to_address(
                await client.get_storage_at(normalized, EIP1967_IMPLEMENTATION_SLOT)
            )
        except Exception as exc:  # pylint: disable=broad-except
            failures += 1
            implementation = None
            logger.debug("EIP-1967 slot read failed for %s: %s", normalized, exc)
        if implementation:
            return ProxyRecord(normalized, implementation, DetectionMethod.EIP1967_SLOT)

        try:
            implementation = minimal_proxy_target(await client.get_bytecode(normalized))
        except Exception as exc:  # pylint: disable=broad-except
            failures += 1
            implementation = None
            logger.debug("Bytecode read failed for %s: %s", normalized, exc)
        if implementation:
            return ProxyRecord(normalized, implementation, DetectionMethod.EIP1167_BYTECODE)

        try:
            implementation = storage_word_to_address(
                await client.get_storage_at(normalized, OZ_LEGACY_IMPLEMENTATION_SLOT)
            )
        except Exception as exc:  # pylint: disable=broad-except
            failures += 1
            implementation = None
            logger.debug("Legacy OpenZeppelin slot read failed for %s: %s", normalized, exc)
        if implementation:
            return ProxyRecord(normalized, implementation, DetectionMethod.OZ_LEGACY_SLOT)

        if failures == 3:
            logger.info("Proxy detection degraded for %s: no method could read chain state.", normalized)
        return ProxyRecord(normalized, None, DetectionMethod.NONE)
