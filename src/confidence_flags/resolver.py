"""フラグ解決オーケストレーター

すべてのエントリポイントは (flag_key, default, context) から ResolutionOutcome への
全域関数で、呼び出し側に例外を送出しない。失敗はログに記録し、デフォルト値を返す。
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from functools import partial
from typing import Any, TypeVar

from structlog.typing import FilteringBoundLogger

from .coercion import coerce_with_error
from .context import EvaluationContext
from .dot_notation import extract_flag_value, parse
from .exceptions import ConfidenceError, ConfidenceErrorCodes
from .logger import null_logger
from .models import (
    REASON_CANCELLED,
    ResolutionOutcome,
    ResolvedFlag,
    ResolveRequest,
    ResolveResponse,
)
from .transport import CallCancelled, ResolveTransport, call_cancellable
from .values import DynamicValue

T = TypeVar("T")

Converter = Callable[[DynamicValue | None, T], tuple[T, str | None]]
ApplyListener = Callable[[str, ResolvedFlag], None]


class FlagResolver:
    """トランスポート呼び出し、ドット記法の探索、型変換をまとめる。

    インスタンスは読み取り専用の設定だけを持ち、並行呼び出しで共有できる。
    """

    def __init__(
        self,
        transport: ResolveTransport,
        client_secret: str,
        *,
        default_context: EvaluationContext | None = None,
        apply: bool = True,
        client_id: str = "",
        logger: FilteringBoundLogger | None = None,
        apply_listener: ApplyListener | None = None,
    ) -> None:
        self._transport = transport
        self._client_secret = client_secret
        self._default_context = default_context or EvaluationContext()
        self._apply = apply
        self._client_id = client_id
        self._logger = logger if logger is not None else null_logger()
        self._apply_listener = apply_listener

    @property
    def default_context(self) -> EvaluationContext:
        return self._default_context

    def with_default_context(self, context: EvaluationContext) -> FlagResolver:
        """プロセス全体のコンテキストに context を結合した新しいリゾルバーを返す。"""
        return FlagResolver(
            self._transport,
            self._client_secret,
            default_context=self._default_context.merge(context),
            apply=self._apply,
            client_id=self._client_id,
            logger=self._logger,
            apply_listener=self._apply_listener,
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
        """任意の型でフラグを解決する。target 省略時は default の型。"""
        converter = partial(coerce_with_error, target=target)
        return await self._resolve(flag_key, default, converter, context, cancel_event)

    async def resolve_bool(
        self,
        flag_key: str,
        default: bool,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[bool]:
        converter = partial(coerce_with_error, target=bool)
        return await self._resolve(flag_key, default, converter, context, cancel_event)

    async def resolve_string(
        self,
        flag_key: str,
        default: str,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[str]:
        converter = partial(coerce_with_error, target=str)
        return await self._resolve(flag_key, default, converter, context, cancel_event)

    async def resolve_int(
        self,
        flag_key: str,
        default: int,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[int]:
        converter = partial(coerce_with_error, target=int)
        return await self._resolve(flag_key, default, converter, context, cancel_event)

    async def resolve_float(
        self,
        flag_key: str,
        default: float,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[float]:
        converter = partial(coerce_with_error, target=float)
        return await self._resolve(flag_key, default, converter, context, cancel_event)

    async def resolve_structured(
        self,
        flag_key: str,
        default: T,
        context: EvaluationContext | None = None,
        *,
        target: Any = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[T]:
        """構造化フラグを解決する。

        target に dataclass や pydantic モデルを渡すとフィールド単位で復元する。
        省略時は default の型 (default が None なら dict)。
        """
        if target is None:
            target = type(default) if default is not None else dict
        converter = partial(coerce_with_error, target=target)
        return await self._resolve(flag_key, default, converter, context, cancel_event)

    async def _resolve(
        self,
        flag_key: str,
        default: T,
        converter: Converter[T],
        context: EvaluationContext | None,
        cancel_event: asyncio.Event | None,
    ) -> ResolutionOutcome[T]:
        log = self._logger.bind(flag_key=flag_key)
        log.debug("resolving_flag", default=default)
        flag_name, path = parse(flag_key)
        try:
            request = ResolveRequest.for_flags(
                [flag_name],
                self._default_context.merge(context),
                self._client_secret,
                apply=self._apply,
                client_id=self._client_id,
            )
            response = await call_cancellable(self._transport.resolve(request), cancel_event)
            return self._to_outcome(log, flag_name, path, response, default, converter)
        except CallCancelled:
            log.info("flag_resolution_cancelled", default=default)
            return _cancelled(default)
        except asyncio.CancelledError:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                raise
            log.info("flag_resolution_cancelled", default=default)
            return _cancelled(default)
        except ConfidenceError as e:
            log.warning("flag_resolution_failed", code=e.code, error=str(e), default=default)
            return ResolutionOutcome.failure(default, e.code, str(e))
        except Exception as e:
            log.error("flag_resolution_failed_unexpected", error=str(e), default=default, exc_info=True)
            return ResolutionOutcome.failure(
                default,
                ConfidenceErrorCodes.GENERAL_ERROR,
                f"An unexpected error occurred: {e}",
            )

    def _to_outcome(
        self,
        log: FilteringBoundLogger,
        flag_name: str,
        path: list[str],
        response: ResolveResponse,
        default: T,
        converter: Converter[T],
    ) -> ResolutionOutcome[T]:
        flag = response.find(flag_name)
        if flag is None:
            log.info("flag_not_found", default=default)
            return ResolutionOutcome.failure(
                default,
                ConfidenceErrorCodes.FLAG_NOT_FOUND,
                f"flag not found: {flag_name}",
            )

        if self._apply and self._apply_listener is not None:
            self._apply_listener(response.resolve_id or response.resolve_token, flag)

        if not flag.has_value:
            # バリアント未割り当て: サーバーの理由付きでデフォルト値を返す
            log.debug("flag_resolved_without_value", reason=flag.reason, default=default)
            return ResolutionOutcome.resolved(default, flag.reason, flag.variant)

        raw = extract_flag_value(flag.value, path)
        if raw is None:
            dotted = ".".join(path)
            log.warning("property_path_not_found", path=dotted, default=default)
            return ResolutionOutcome.failure(
                default,
                ConfidenceErrorCodes.PROPERTY_PATH_NOT_FOUND,
                f"Property path '{dotted}' not found in flag '{flag_name}'",
            )

        value, error = converter(raw, default)
        if error is not None:
            log.warning("flag_coercion_failed", error=error, default=default)
            return ResolutionOutcome.failure(default, ConfidenceErrorCodes.COERCION_FAILURE, error)

        log.debug("flag_resolved", value=value, reason=flag.reason, variant=flag.variant)
        return ResolutionOutcome.resolved(value, flag.reason, flag.variant)


def _cancelled(default: T) -> ResolutionOutcome[T]:
    return ResolutionOutcome.failure(
        default,
        ConfidenceErrorCodes.CANCELLED,
        "Request was cancelled",
        reason=REASON_CANCELLED,
    )
