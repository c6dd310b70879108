"""Etherscan V2 client: paginated ERC-20 transfer history and token balances.

Every attempt, retries included, goes through the ``before_request`` hook
(normally ``RateGate.acquire_slot``) so retries never skip pacing.

Transient failures (HTTP 429/5xx, "rate limit"-style payloads, transport
errors) are retried with linear backoff; any other non-2xx status is
permanent.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from token_tracker.config import settings
from token_tracker.errors import (
    ConfigError,
    UpstreamDataError,
    UpstreamHttpError,
    UpstreamRetryExhaustedError,
)

logger = logging.getLogger(__name__)

TRANSIENT_PHRASES = (
    "rate limit",
    "max calls per sec",
    "too many requests",
    "temporarily unavailable",
    "timeout",
    "gateway",
    "service unavailable",
)

BeforeRequest = Callable[[], Awaitable[None]]
RetryObserver = Callable[[int, str], None]


def _payload_text(data) -> str:
    if not isinstance(data, dict):
        return ""
    parts = [data.get("message"), data.get("result"), data.get("error")]
    err = data.get("error")
    if isinstance(err, dict):
        parts.append(err.get("message"))
    # list results are data, not messages
    return " ".join(str(p).lower() for p in parts if p and not isinstance(p, list))


def is_transient_payload(data) -> bool:
    text = _payload_text(data)
    return any(phrase in text for phrase in TRANSIENT_PHRASES)


def _error_message(data) -> str:
    if isinstance(data, dict):
        if isinstance(data.get("result"), str):
            return data["result"]
        if data.get("message"):
            return str(data["message"])
    return "Unknown explorer response"


class EtherscanClient:
    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        chain_id: int | None = None,
        before_request: BeforeRequest | None = None,
        on_retry: RetryObserver | None = None,
        max_attempts: int | None = None,
        backoff_ms: int | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else settings.upstream_api_key
        if not self.api_key:
            raise ConfigError("UPSTREAM_API_KEY is required")

        self.base_url = base_url or settings.upstream_base_url
        self.chain_id = chain_id or settings.upstream_chain_id
        self.before_request = before_request
        self.on_retry = on_retry
        self.max_attempts = (
            max_attempts if max_attempts is not None else settings.upstream_max_attempts
        )
        self.backoff_ms = backoff_ms if backoff_ms is not None else settings.upstream_backoff_ms

        self._client = http_client
        self._owns_client = http_client is None

    async def __aenter__(self) -> EtherscanClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.upstream_timeout_seconds)
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _notify_retry(self, attempt: int, reason: str) -> None:
        if self.on_retry is None:
            return
        try:
            self.on_retry(attempt, reason)
        except Exception:
            logger.warning("Retry observer raised; ignoring", exc_info=True)

    async def _call(self, params: dict) -> dict:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=settings.upstream_timeout_seconds)

        query = {"chainid": str(self.chain_id), **params, "apikey": self.api_key}
        attempt = 0

        while True:
            attempt += 1
            if self.before_request is not None:
                await self.before_request()

            try:
                resp = await self._client.get(self.base_url, params=query)
            except httpx.TransportError as exc:
                reason = f"transport error: {exc!r}"
            else:
                try:
                    data = resp.json()
                except ValueError:
                    data = None

                if resp.status_code == 429 or resp.status_code >= 500 or is_transient_payload(data):
                    reason = f"explorer temporary failure status={resp.status_code}"
                    if data is not None:
                        reason += f" ({_error_message(data)})"
                elif not resp.is_success:
                    raise UpstreamHttpError(resp.status_code)
                elif not isinstance(data, dict):
                    raise UpstreamDataError("Explorer returned a non-JSON body")
                else:
                    return data

            if self.max_attempts and attempt >= self.max_attempts:
                raise UpstreamRetryExhaustedError(attempt, reason)

            logger.debug("%s %s attempt %d: %s", params.get("action"), params.get("address", ""), attempt, reason)
            self._notify_retry(attempt, reason)
            await asyncio.sleep(attempt * self.backoff_ms / 1000)

    async def fetch_transfer_page(
        self, address: str, page: int = 1, page_size: int = 100
    ) -> list[dict]:
        """One page of ERC-20 transfers touching ``address``, oldest first.

        An empty list is a normal end-of-history page; anything that is not a
        list is an explorer error.
        """
        data = await self._call({
            "module": "account",
            "action": "tokentx",
            "address": address,
            "sort": "asc",
            "page": page,
            "offset": page_size,
        })
        result = data.get("result")
        if not isinstance(result, list):
            raise UpstreamDataError(f"Explorer API error: {_error_message(data)}")
        return result

    async def fetch_token_balance(self, address: str, contract_address: str) -> str:
        """Current raw (integer string) balance of one token for one address.

        Error text can arrive in ``result`` too ("Error! Invalid address
        format"), so anything but a plain digit string is rejected.
        """
        data = await self._call({
            "module": "account",
            "action": "tokenbalance",
            "address": address,
            "contractaddress": contract_address,
            "tag": "latest",
        })
        result = data.get("result")
        is_integer = isinstance(result, str) and result.isascii() and result.isdigit()
        if data.get("status") == "0" or not is_integer:
            raise UpstreamDataError(f"Explorer API error: {_error_message(data)}")
        return result
