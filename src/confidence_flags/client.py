"""Confidence クライアント"""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, TypeVar

from structlog.typing import FilteringBoundLogger

from .config import ConfidenceOptions
from .context import EvaluationContext
from .exceptions import ConfidenceError
from .logger import null_logger
from .models import Event, EventBatch, ResolutionOutcome
from .resolver import FlagResolver
from .transport import (
    CallCancelled,
    EventTransport,
    HttpEventTransport,
    HttpResolveTransport,
    ResolveTransport,
    call_cancellable,
)
from .values import DynamicValue

T = TypeVar("T")

RESERVED_CONTEXT_KEY = "context"


class ConfidenceClient:
    """Confidence のフラグ解決とイベント送信を行うクライアント。

    クライアントは不変で、複数のタスクから同時に使ってよい。
    コンテキストを変えたい場合は with_context() で新しいクライアントを得る。
    """

    def __init__(
        self,
        options: ConfidenceOptions,
        *,
        context: EvaluationContext | None = None,
        logger: FilteringBoundLogger | None = None,
        resolve_transport: ResolveTransport | None = None,
        event_transport: EventTransport | None = None,
        apply: bool = True,
    ) -> None:
        self._options = options
        self._logger = logger if logger is not None else null_logger()
        self._resolve_transport = resolve_transport or HttpResolveTransport(options, self._logger)
        self._event_transport = event_transport or HttpEventTransport(options, self._logger)
        self._resolver = FlagResolver(
            self._resolve_transport,
            options.client_secret,
            default_context=context,
            apply=apply,
            logger=self._logger,
        )
        self._apply = apply
        self._logger.debug(
            "client_initialized",
            resolve_url=options.resolve_url,
            event_url=options.event_url,
            timeout_seconds=options.timeout_seconds,
            max_retries=options.max_retries,
        )

    @property
    def options(self) -> ConfidenceOptions:
        return self._options

    @property
    def context(self) -> EvaluationContext:
        return self._resolver.default_context

    def with_context(self, context: EvaluationContext) -> ConfidenceClient:
        """現在のコンテキストに context を結合した新しいクライアントを返す。"""
        return ConfidenceClient(
            self._options,
            context=self.context.merge(context),
            logger=self._logger,
            resolve_transport=self._resolve_transport,
            event_transport=self._event_transport,
            apply=self._apply,
        )

    async def resolve(
        self,
        flag_key: str,
        default: T,
        context: EvaluationContext | None = None,
        *,
        target: Any = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[T]:
        return await self._resolver.resolve(
            flag_key, default, context, target=target, cancel_event=cancel_event
        )

    async def resolve_bool(
        self,
        flag_key: str,
        default: bool,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[bool]:
        return await self._resolver.resolve_bool(flag_key, default, context, cancel_event=cancel_event)

    async def resolve_string(
        self,
        flag_key: str,
        default: str,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[str]:
        return await self._resolver.resolve_string(flag_key, default, context, cancel_event=cancel_event)

    async def resolve_int(
        self,
        flag_key: str,
        default: int,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[int]:
        return await self._resolver.resolve_int(flag_key, default, context, cancel_event=cancel_event)

    async def resolve_float(
        self,
        flag_key: str,
        default: float,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[float]:
        return await self._resolver.resolve_float(flag_key, default, context, cancel_event=cancel_event)

    async def resolve_structured(
        self,
        flag_key: str,
        default: T,
        context: EvaluationContext | None = None,
        *,
        target: Any = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[T]:
        return await self._resolver.resolve_structured(
            flag_key, default, context, target=target, cancel_event=cancel_event
        )

    async def track(
        self,
        event_name: str,
        data: Mapping[str, Any] | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> None:
        """イベントを 1 件送信する。

        送信失敗はログに記録するだけで送出しない。

        Raises:
            ValueError: data に予約キー ``context`` が含まれる場合
            TypeError: data に表現できない値が含まれる場合
        """
        payload: dict[str, Any] = {}
        for key, value in (data or {}).items():
            if key == RESERVED_CONTEXT_KEY:
                raise ValueError('Invalid key "context" inside the data')
            payload[key] = DynamicValue.from_python(value).to_json()
        payload[RESERVED_CONTEXT_KEY] = self.context.to_wire()

        now = datetime.now(timezone.utc)
        batch = EventBatch(
            client_secret=self._options.client_secret,
            send_time=now,
            events=(
                Event(
                    event_definition=f"eventDefinitions/{event_name}",
                    event_time=now,
                    payload=payload,
                ),
            ),
        )
        log = self._logger.bind(event_name=event_name)
        log.debug("tracking_event")
        try:
            await call_cancellable(self._event_transport.publish(batch), cancel_event)
        except CallCancelled:
            log.info("event_tracking_cancelled")
            return
        except ConfidenceError as e:
            log.warning("event_tracking_failed", code=e.code, error=str(e))
            return
        except Exception as e:
            log.error("event_tracking_failed_unexpected", error=str(e), exc_info=True)
            return
        log.debug("event_tracked")

