from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Protocol, TypeVar

import anyio
import httpx
from pydantic import BaseModel

from flow_sync.errors import SyncError, SyncErrorCode
from flow_sync.schemas_sync import (
    PullRequest,
    PullResponse,
    PushRequest,
    PushResponse,
    StatusResponse,
)

logger = logging.getLogger(__name__)

ResponseT = TypeVar("ResponseT", bound=BaseModel)
SleepFn = Callable[[float], Awaitable[None]]

PUSH_PATH = "/v1/sync/push"
PULL_PATH = "/v1/sync/pull"
STATUS_PATH = "/v1/sync/status"

_RETRYABLE_STATUS_CODES = frozenset({500, 502, 503, 504})


@dataclass(frozen=True)
class RetryConfig:
    max_retries: int = 5
    base_delay_ms: int = 1000
    max_delay_ms: int = 60_000
    backoff_multiplier: float = 2.0


def backoff_delay_ms(config: RetryConfig, retry_count: int) -> float:
    delay = config.base_delay_ms * (config.backoff_multiplier**retry_count)
    return float(min(delay, config.max_delay_ms))


def parse_retry_after_ms(value: str | None) -> float | None:
    # Only the delay-seconds form is supported; HTTP-date values fall back to backoff.
    if value is None:
        return None
    try:
        seconds = float(value.strip())
    except ValueError:
        return None
    if not math.isfinite(seconds) or seconds < 0:
        return None
    return seconds * 1000


class SyncTransportAPI(Protocol):
    async def push(self, request: PushRequest) -> PushResponse: ...

    async def pull(self, request: PullRequest) -> PullResponse: ...

    async def check_status(self) -> StatusResponse: ...


class SyncTransport:
    def __init__(
        self,
        *,
        server_url: str,
        api_key: str,
        timeout_seconds: float = 15.0,
        retry: RetryConfig | None = None,
        client: httpx.AsyncClient | None = None,
        sleep: SleepFn | None = None,
    ) -> None:
        self._server_url = server_url.rstrip("/")
        self._api_key = api_key.strip()
        self._timeout = timeout_seconds
        self._retry = retry or RetryConfig()
        self._client = client
        self._sleep: SleepFn = sleep or anyio.sleep

    @property
    def server_url(self) -> str:
        return self._server_url

    @property
    def retry_config(self) -> RetryConfig:
        return self._retry

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    async def _send(self, method: str, url: str, *, json: dict[str, Any] | None) -> httpx.Response:
        if self._client is not None:
            return await self._client.request(method, url, headers=self._headers(), json=json)
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            return await client.request(method, url, headers=self._headers(), json=json)

    async def _wait(self, delay_ms: float, retry_count: int, reason: str, url: str) -> None:
        logger.warning(
            "sync request retry attempt=%s/%s delay_ms=%s reason=%s url=%s",
            retry_count + 1,
            self._retry.max_retries,
            int(delay_ms),
            reason,
            url,
        )
        await self._sleep(delay_ms / 1000)

    async def _request(
        self,
        method: str,
        path: str,
        *,
        body: BaseModel | None,
        response_model: type[ResponseT],
    ) -> ResponseT:
        url = f"{self._server_url}{path}"
        json_body = body.model_dump(mode="json", by_alias=True, exclude_none=True) if body else None
        retry_count = 0

        while True:
            try:
                resp = await self._send(method, url, json=json_body)
            except (httpx.TransportError, OSError) as e:
                if retry_count < self._retry.max_retries:
                    delay = backoff_delay_ms(self._retry, retry_count)
                    await self._wait(delay, retry_count, type(e).__name__, url)
                    retry_count += 1
                    continue
                raise SyncError(
                    SyncErrorCode.NETWORK_ERROR,
                    f"network error after {retry_count} retries: {e!r}",
                ) from e

            status = resp.status_code
            if status == 401:
                raise SyncError(
                    SyncErrorCode.AUTH_FAILED, "authentication failed", status_code=status
                )

            if status == 429:
                if retry_count < self._retry.max_retries:
                    delay = parse_retry_after_ms(resp.headers.get("Retry-After"))
                    if delay is None:
                        delay = backoff_delay_ms(self._retry, retry_count)
                    await self._wait(delay, retry_count, "429", url)
                    retry_count += 1
                    continue
                raise SyncError(
                    SyncErrorCode.RATE_LIMITED,
                    f"rate limited after {retry_count} retries",
                    status_code=status,
                )

            if status in _RETRYABLE_STATUS_CODES:
                if retry_count < self._retry.max_retries:
                    delay = backoff_delay_ms(self._retry, retry_count)
                    await self._wait(delay, retry_count, str(status), url)
                    retry_count += 1
                    continue
                raise SyncError(
                    SyncErrorCode.SERVER_ERROR,
                    f"server error {status} after {retry_count} retries",
                    status_code=status,
                )

            if not (200 <= status < 300):
                raise SyncError(
                    SyncErrorCode.REQUEST_FAILED,
                    f"request failed: {status} {resp.text}",
                    status_code=status,
                )

            try:
                return response_model.model_validate(resp.json())
            except ValueError as e:
                raise SyncError(
                    SyncErrorCode.REQUEST_FAILED,
                    f"invalid response body from {path}: {e}",
                    status_code=status,
                ) from e

    async def push(self, request: PushRequest) -> PushResponse:
        return await self._request("POST", PUSH_PATH, body=request, response_model=PushResponse)

    async def pull(self, request: PullRequest) -> PullResponse:
        return await self._request("POST", PULL_PATH, body=request, response_model=PullResponse)

    async def check_status(self) -> StatusResponse:
        return await self._request("GET", STATUS_PATH, body=None, response_model=StatusResponse)
