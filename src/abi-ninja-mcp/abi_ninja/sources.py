"""
ABI sources.

Each source exposes ``fetch(address, chain_id)`` returning a validated ABI or
raising a :class:`SourceError` subclass. The resolver walks them in order
and stops at the first success.
"""

from __future__ import annotations

import asyncio
import time
from enum import Enum
from typing import Any, Dict, List, Optional

import requests

from .abi import validate_abi
from .etherscan_client import EtherscanClient
from .exceptions import (
    AbiNotFound,
    InvalidAbiFormat,
    InvalidSourceResponse,
    NetworkError,
    NotVerified,
)


class AbiSourceKind(str, Enum):
    USER_PROVIDED = "userProvided"
    ABI_DIRECTORY = "abiDirectory"
    BLOCK_EXPLORER = "blockExplorer"
    DECOMPILER = "decompiler"


class AbiSource:
    kind: AbiSourceKind

    @property
    def name(self) -> str:
        return self.kind.value

    async def fetch(self, address: str, chain_id: int) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._fetch, address, chain_id)

    def _fetch(self, address: str, chain_id: int) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def _validated(self, abi: Any) -> List[Dict[str, Any]]:
        try:
            return validate_abi(abi)
        except InvalidAbiFormat as exc:
            raise InvalidSourceResponse(self.name, f"Unusable ABI from {self.name}: {exc.message}") from exc


class HttpAbiSource(AbiSource):
    """Source answering GET {base_url}/{chain_id}/{address} with JSON."""

    def __init__(
        self,
        base_url: str,
        timeout: int = 10,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.backoff_seconds = backoff_seconds
        self.session = requests.Session()

    def url_for(self, address: str, chain_id: int) -> str:
        return f"{self.base_url}/{chain_id}/{address}"

    def _get_json(self, url: str) -> Any:
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_retries + 1):
            try:
                response = self.session.get(url, timeout=self.timeout)
                if response.status_code == 404:
                    raise AbiNotFound(self.name, f"{self.name} has no ABI at {url}.")
                if 400 <= response.status_code < 500 and response.status_code != 429:
                    raise InvalidSourceResponse(
                        self.name, f"{self.name} rejected the request (HTTP {response.status_code})."
                    )
                if (response.status_code == 429 or response.status_code >= 500) and attempt < self.max_retries:
                    time.sleep(self.backoff_seconds * attempt)
                    continue

                response.raise_for_status()
                return response.json()
            except ValueError as exc:
                # requests raises a JSONDecodeError that is also a RequestException
                last_error = exc
                if attempt < self.max_retries:
                    time.sleep(self.backoff_seconds * attempt)
                    continue
                raise InvalidSourceResponse(self.name, f"{self.name} returned non-JSON response.") from exc
            except requests.RequestException as exc:
                last_error = exc
                if attempt < self.max_retries:
                    time.sleep(self.backoff_seconds * attempt)
                    continue
                raise NetworkError(self.name, f"{self.name} request failed: {exc}") from exc

        if last_error:
            raise NetworkError(self.name, f"{self.name} request failed: {last_error}")
        raise RuntimeError("Request failed without raising an exception.")


class AbiDirectorySource(HttpAbiSource):
    """Public ABI directory indexed by chain id and address."""

    kind = AbiSourceKind.ABI_DIRECTORY

    def _fetch(self, address: str, chain_id: int) -> List[Dict[str, Any]]:
        payload = self._get_json(self.url_for(address, chain_id))
        if isinstance(payload, list):
            abi = payload
        elif isinstance(payload, dict):
            abi = payload.get("abi")
        else:
            raise InvalidSourceResponse(self.name, "Unexpected ABI directory response.")
        if not abi:
            raise AbiNotFound(self.name, f"ABI directory has no ABI for {address} on chain {chain_id}.")
        return self._validated(abi)


class BlockExplorerSource(AbiSource):
    """Verified-source ABI from the Etherscan V2 multichain API."""

    kind = AbiSourceKind.BLOCK_EXPLORER

    def __init__(self, client: EtherscanClient) -> None:
        self.client = client

    def _fetch(self, address: str, chain_id: int) -> List[Dict[str, Any]]:
        try:
            payload = self.client.get_abi(address, chain_id)
        except requests.RequestException as exc:
            raise NetworkError(self.name, f"Block explorer request failed: {exc}") from exc
        except ValueError as exc:
            raise InvalidSourceResponse(self.name, str(exc)) from exc

        if not isinstance(payload, dict):
            raise InvalidSourceResponse(self.name, "Unexpected response from Etherscan.")

        status = str(payload.get("status", "")).strip()
        message = str(payload.get("message", "") or "")
        result = payload.get("result")
        if status == "1" and result:
            return self._validated(result)

        if self.client.is_rate_limit_payload(payload):
            raise NetworkError(self.name, f"Block explorer rate limited: {result or message}")

        detail = result if isinstance(result, str) and result else message or "unknown error"
        lowered = detail.lower()
        if "not verified" in lowered:
            raise NotVerified(self.name, f"Contract {address} is not verified on chain {chain_id}.")
        if "api key" in lowered or "apikey" in lowered:
            raise NetworkError(self.name, f"Etherscan error: {detail}.")
        raise AbiNotFound(self.name, f"Etherscan error: {detail}.")


class DecompilerSource(HttpAbiSource):
    """
    Best-effort ABI recovered from bytecode by a remote decompiler.

    The result may be partial; it is only used when explicitly requested.
    """

    kind = AbiSourceKind.DECOMPILER

    def _fetch(self, address: str, chain_id: int) -> List[Dict[str, Any]]:
        payload = self._get_json(self.url_for(address, chain_id))
        if isinstance(payload, dict) and "abi" not in payload:
            error = payload.get("error") or payload.get("message") or "no ABI in response"
            raise AbiNotFound(self.name, f"Decompiler failed: {error}")
        return self._validated(payload)

