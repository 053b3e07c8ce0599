import itertools
import time
from typing import Any, Dict, List, Optional, Sequence

import requests

from .logging import get_logger

logger = get_logger("rpc")

RETRYABLE_STATUS = 429


def _describe_rpc_error(error_obj: Dict[str, Any]) -> str:
    parts = [
        f"code {error_obj['code']}" if error_obj.get("code") is not None else "",
        str(error_obj.get("message") or ""),
        str(error_obj.get("data") or ""),
    ]
    return ": ".join(part for part in parts if part) or "unknown error"


def _hex_result(method: str, result: Any) -> str:
    if not isinstance(result, str) or not result.startswith("0x"):
        raise ValueError(f"RPC error: {method} returned unexpected result.")
    return result


class RpcClient:
    """
    JSON-RPC 2.0 over HTTP POST against one or more EVM node endpoints.

    ``rpc_urls[0]`` is the primary. With ``failover`` enabled, an endpoint
    that is still unreachable after its retries hands over to the next URL.
    A JSON-RPC error object is raised as is: the node answered.
    """

    def __init__(
        self,
        rpc_urls: Sequence[str],
        timeout: int = 10,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
        failover: bool = True,
        headers: Optional[Dict[str, str]] = None,
    ) -> None:
        if isinstance(rpc_urls, str):
            rpc_urls = [rpc_urls]
        self.rpc_urls = [url.strip() for url in rpc_urls or [] if isinstance(url, str) and url.strip()]
        if not self.rpc_urls:
            raise ValueError("rpc_urls must contain at least one non-empty URL.")

        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.backoff_seconds = float(backoff_seconds)
        self.failover = failover
        self.session = requests.Session()
        self.session.headers.update({"Content-Type": "application/json"})
        if headers:
            self.session.headers.update(dict(headers))
        self._ids = itertools.count(1)

    @property
    def rpc_url(self) -> str:
        return self.rpc_urls[0]

    def call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        if not isinstance(method, str) or not method.strip():
            raise ValueError("method must be a non-empty string.")
        params = [] if params is None else params
        if not isinstance(params, list):
            raise ValueError("params must be a list.")

        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        endpoints = self.rpc_urls if self.failover else self.rpc_urls[:1]

        for position, url in enumerate(endpoints, start=1):
            try:
                return self._post_with_retries(url, payload)
            except requests.RequestException as exc:
                if position == len(endpoints):
                    raise
                logger.warning("RPC endpoint %s unreachable for %s (%s); failing over.", url, method, exc)

        raise RuntimeError("RPC request failed without raising an exception.")

    def _post_with_retries(self, url: str, payload: Dict[str, Any]) -> Any:
        for attempt in range(1, self.max_retries + 1):
            final = attempt == self.max_retries
            try:
                response = self.session.post(url, json=payload, timeout=self.timeout)
                if not final and (response.status_code == RETRYABLE_STATUS or response.status_code >= 500):
                    time.sleep(self.backoff_seconds * attempt)
                    continue
                response.raise_for_status()
                return self._unwrap(response.json())
            except (requests.RequestException, ValueError):
                if final:
                    raise
                time.sleep(self.backoff_seconds * attempt)

        raise RuntimeError("RPC request failed without raising an exception.")

    @staticmethod
    def _unwrap(data: Any) -> Any:
        if not isinstance(data, dict):
            raise ValueError("Unexpected JSON-RPC response (non-object).")
        error_obj = data.get("error")
        if isinstance(error_obj, dict):
            raise ValueError(f"RPC error: {_describe_rpc_error(error_obj)}.")
        if "result" not in data:
            raise ValueError("Unexpected JSON-RPC response (missing result).")
        return data["result"]

    def get_storage_at(self, address: str, slot: str, tag: str = "latest") -> str:
        return _hex_result("eth_getStorageAt", self.call("eth_getStorageAt", [address, slot, tag]))

    def get_code(self, address: str, tag: str = "latest") -> str:
        return _hex_result("eth_getCode", self.call("eth_getCode", [address, tag]))
