import time
from typing import Any, Dict, Iterator, Optional

import requests

from .logging import get_logger

logger = get_logger("etherscan")

RATE_LIMIT_MARKERS = (
    "rate limit",
    "max calls per sec",
    "too many requests",
)


def _payload_messages(payload: Dict[str, Any]) -> Iterator[str]:
    for key in ("message", "result"):
        value = payload.get(key)
        if isinstance(value, str) and value:
            yield value
    error_obj = payload.get("error")
    if isinstance(error_obj, dict):
        for key in ("message", "data"):
            value = error_obj.get(key)
            if isinstance(value, str) and value:
                yield value


class EtherscanClient:
    """Etherscan V2 multichain API, limited to verified contract ABIs."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str,
        timeout: int = 10,
        max_retries: int = 3,
        backoff_seconds: float = 0.5,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max(1, int(max_retries))
        self.backoff_seconds = backoff_seconds
        self.session = requests.Session()

    def get_abi(self, address: str, chain_id: int) -> Dict[str, Any]:
        """Raw ``getabi`` envelope; ``result`` holds the ABI as a JSON string on success."""
        return self._request(
            {
                "module": "contract",
                "action": "getabi",
                "address": address,
                "chainid": str(chain_id),
            }
        )

    def is_rate_limit_payload(self, payload: Any) -> bool:
        if not isinstance(payload, dict):
            return False
        haystack = " ".join(_payload_messages(payload)).lower()
        return any(marker in haystack for marker in RATE_LIMIT_MARKERS)

    def _request(self, params: Dict[str, Any]) -> Dict[str, Any]:
        query = dict(params)
        if self.api_key:
            query["apikey"] = self.api_key

        for attempt in range(1, self.max_retries + 1):
            final = attempt == self.max_retries
            try:
                response = self.session.get(self.base_url, params=query, timeout=self.timeout)
                if not final and (response.status_code == 429 or response.status_code >= 500):
                    time.sleep(self.backoff_seconds * attempt)
                    continue
                response.raise_for_status()
                payload = response.json()
            except ValueError as exc:
                if final:
                    raise ValueError("Failed to parse response from Etherscan.") from exc
                time.sleep(self.backoff_seconds * attempt)
                continue
            except requests.RequestException:
                if final:
                    raise
                time.sleep(self.backoff_seconds * attempt)
                continue

            if not final and self.is_rate_limit_payload(payload):
                logger.debug("Etherscan rate limited %s, backing off (attempt %d).", params.get("action"), attempt)
                time.sleep(self.backoff_seconds * attempt)
                continue
            return payload

        raise RuntimeError("Request failed without raising an exception.")
