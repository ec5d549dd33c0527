"""Confidence API への HTTP トランスポート (httpx)"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Mapping
from typing import Any, Protocol, TypeVar

import httpx
from structlog.typing import FilteringBoundLogger

from .config import ConfidenceOptions
from .exceptions import ConfidenceError, ConfidenceErrorCodes
from .logger import null_logger
from .models import EventBatch, ResolvedFlag, ResolveRequest, ResolveResponse

RESOLVE_FLAGS_PATH = "/v1/flags:resolve"
PUBLISH_EVENTS_PATH = "/v1/events:publish"
MAX_BACKOFF_SECONDS = 10.0

T = TypeVar("T")


class ResolveTransport(Protocol):
    """フラグ解決トランスポートのプロトコル。"""

    async def resolve(self, request: ResolveRequest) -> ResolveResponse: ...


class EventTransport(Protocol):
    """イベント送信トランスポートのプロトコル。"""

    async def publish(self, batch: EventBatch) -> None: ...


class _RetryingHttpClient:
    """1 回ごとのタイムアウトと上限付きリトライで JSON を POST する。"""

    def __init__(
        self,
        base_url: str,
        options: ConfidenceOptions,
        logger: FilteringBoundLogger,
    ) -> None:
        self._base_url = base_url
        self._timeout = float(options.timeout_seconds)
        self._max_attempts = options.max_retries + 1
        self._backoff = options.retry_backoff_seconds
        self._logger = logger
        self._headers = {"Accept": "application/json", "Content-Type": "application/json"}

    def _make_client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self._base_url,
            headers=self._headers,
            timeout=self._timeout,
        )

    def _compute_delay(self, attempt: int) -> float:
        return min(self._backoff * (2**attempt), MAX_BACKOFF_SECONDS)

    async def post_json(self, path: str, body: Mapping[str, Any]) -> httpx.Response:
        attempt = 0
        while True:
            try:
                async with asyncio.timeout(self._timeout), self._make_client() as client:
                    resp = await client.post(path, json=body)
            except TimeoutError as e:
                error = ConfidenceError(
                    code=ConfidenceErrorCodes.TRANSPORT_FAILURE,
                    message=f"POST {path} timed out after {self._timeout}s",
                    cause=e,
                )
            except httpx.HTTPError as e:
                error = ConfidenceError(
                    code=ConfidenceErrorCodes.TRANSPORT_FAILURE,
                    message=f"POST {path} failed: {type(e).__name__}: {e}",
                    cause=e,
                )
            else:
                if resp.status_code < 400:
                    return resp
                error = ConfidenceError(
                    code=ConfidenceErrorCodes.TRANSPORT_FAILURE,
                    message=f"POST {path}: HTTP {resp.status_code}: {resp.text}",
                )
                if not _is_transient(resp.status_code):
                    raise error
            attempt += 1
            if attempt >= self._max_attempts:
                raise error
            delay = self._compute_delay(attempt - 1)
            self._logger.debug(
                "request_retry",
                path=path,
                attempt=attempt,
                delay=delay,
                error=str(error),
            )
            await asyncio.sleep(delay)


def _is_transient(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class CallCancelled(Exception):
    """cancel_event によって呼び出しが中断された。"""


async def call_cancellable(call: Awaitable[T], cancel_event: asyncio.Event | None) -> T:
    """call を実行し、先に cancel_event が立った場合は中断して CallCancelled を送出する。

    cancel_event が None なら call をそのまま待つ。
    """
    if cancel_event is None:
        return await call
    if cancel_event.is_set():
        if asyncio.iscoroutine(call):
            call.close()
        raise CallCancelled
    task = asyncio.ensure_future(call)
    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not task.done():
            task.cancel()
    if task in done:
        return task.result()
    raise CallCancelled


class HttpResolveTransport:
    """httpx を使ったフラグ解決トランスポート。"""

    def __init__(
        self,
        options: ConfidenceOptions,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        self._logger = logger if logger is not None else null_logger()
        self._http = _RetryingHttpClient(options.resolve_url, options, self._logger)

    async def resolve(self, request: ResolveRequest) -> ResolveResponse:
        """フラグを解決する。

        Raises:
            ConfidenceError: 通信失敗 (TRANSPORT_FAILURE) またはレスポンス不正
                (DESERIALIZATION_FAILURE)
        """
        resp = await self._http.post_json(RESOLVE_FLAGS_PATH, request.to_dict())
        try:
            data = resp.json()
        except ValueError as e:
            raise ConfidenceError(
                code=ConfidenceErrorCodes.DESERIALIZATION_FAILURE,
                message=f"Failed to decode resolve response: {e}",
                cause=e,
            ) from e
        return ResolveResponse.from_dict(data)


class HttpEventTransport:
    """httpx を使ったイベント送信トランスポート。"""

    def __init__(
        self,
        options: ConfidenceOptions,
        logger: FilteringBoundLogger | None = None,
    ) -> None:
        self._logger = logger if logger is not None else null_logger()
        self._http = _RetryingHttpClient(options.event_url, options, self._logger)

    async def publish(self, batch: EventBatch) -> None:
        await self._http.post_json(PUBLISH_EVENTS_PATH, batch.to_dict())


class InMemoryResolveTransport:
    """テスト用インメモリ解決トランスポート。"""

    def __init__(self, flags: Mapping[str, ResolvedFlag] | None = None) -> None:
        self._flags: dict[str, ResolvedFlag] = dict(flags or {})
        self.requests: list[ResolveRequest] = []

    def set_flag(self, flag: ResolvedFlag) -> None:
        """フラグを設定する。"""
        self._flags[flag.name] = flag

    async def resolve(self, request: ResolveRequest) -> ResolveResponse:
        self.requests.append(request)
        found = tuple(
            self._flags[key] for key in sorted(request.flag_keys) if key in self._flags
        )
        return ResolveResponse(resolved_flags=found)
