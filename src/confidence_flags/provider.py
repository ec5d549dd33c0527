"""フラグプロバイダーとライフサイクル管理

リモート (ConfidenceProvider)、インメモリ (InMemoryProvider)、
ローカル解決 (LocalProvider) の 3 種類を提供する。
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from datetime import datetime, timezone
from enum import StrEnum
from typing import Any, Protocol, TypeVar

from structlog.typing import FilteringBoundLogger

from .client import ConfidenceClient
from .context import EvaluationContext
from .exceptions import ConfidenceError, ConfidenceErrorCodes
from .logger import null_logger
from .models import (
    REASON_PROVIDER_NOT_READY,
    ClientIdentity,
    ResolutionOutcome,
    ResolvedFlag,
    ResolveReason,
    ResolveRequest,
    ResolveResponse,
    full_flag_key,
)
from .resolver import FlagResolver
from .telemetry import AssignmentLogger, FlagAssignedEvent, build_assignment_event
from .transport import InMemoryResolveTransport
from .values import DynamicValue

T = TypeVar("T")

IN_MEMORY_CLIENT_SECRET = "in-memory"


class ProviderState(StrEnum):
    """プロバイダーの状態。"""

    NOT_READY = "NOT_READY"
    INITIALIZING = "INITIALIZING"
    READY = "READY"
    SHUTTING_DOWN = "SHUTTING_DOWN"
    SHUTDOWN = "SHUTDOWN"
    FAILED_INIT = "FAILED_INIT"


class FlagProvider(Protocol):
    """フラグプロバイダーのプロトコル。"""

    @property
    def name(self) -> str: ...

    @property
    def state(self) -> ProviderState: ...

    async def initialize(self, context: EvaluationContext | None = None) -> None: ...

    async def shutdown(self) -> None: ...

    async def resolve_bool(
        self,
        flag_key: str,
        default: bool,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[bool]: ...

    async def resolve_string(
        self,
        flag_key: str,
        default: str,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[str]: ...

    async def resolve_int(
        self,
        flag_key: str,
        default: int,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[int]: ...

    async def resolve_float(
        self,
        flag_key: str,
        default: float,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[float]: ...

    async def resolve_structured(
        self,
        flag_key: str,
        default: Any,
        context: EvaluationContext | None = None,
        *,
        target: Any = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[Any]: ...


class LocalResolver(Protocol):
    """ローカル解決エンジンのプロトコル。

    warm_up() で解決に必要な状態を取得し、以降は resolve() をローカルで処理する。
    """

    async def warm_up(self) -> None: ...

    async def resolve(self, request: ResolveRequest) -> ResolveResponse: ...


class AssignmentSink(Protocol):
    """割り当てイベントの送信先。"""

    async def send(self, event: FlagAssignedEvent) -> None: ...


class _LifecycleProvider(ABC):
    """状態遷移と READY 以外での解決拒否を共通化する抽象基底クラス。"""

    provider_name = ""

    def __init__(self, logger: FilteringBoundLogger | None) -> None:
        self._state = ProviderState.NOT_READY
        self._logger = (logger if logger is not None else null_logger()).bind(
            provider=self.provider_name
        )

    @property
    def name(self) -> str:
        return self.provider_name

    @property
    def state(self) -> ProviderState:
        return self._state

    @abstractmethod
    async def initialize(self, context: EvaluationContext | None = None) -> None:
        """プロバイダーを初期化し、成功すれば READY に遷移する。"""
        ...

    @abstractmethod
    def _source(self) -> ConfidenceClient | FlagResolver:
        """READY 時に解決を委譲する先を返す。"""
        ...

    def _transition(self, state: ProviderState) -> None:
        self._logger.debug("provider_state_changed", previous=str(self._state), state=str(state))
        self._state = state

    def _not_ready(self, flag_key: str, default: T) -> ResolutionOutcome[T] | None:
        if self._state == ProviderState.READY:
            return None
        self._logger.info("provider_not_ready", flag_key=flag_key, state=str(self._state))
        return ResolutionOutcome.failure(
            default,
            ConfidenceErrorCodes.PROVIDER_NOT_READY,
            f"Provider is not ready (state: {self._state})",
            reason=REASON_PROVIDER_NOT_READY,
        )

    async def shutdown(self) -> None:
        if self._state in (ProviderState.SHUTDOWN, ProviderState.SHUTTING_DOWN):
            return
        self._transition(ProviderState.SHUTTING_DOWN)
        try:
            await self._on_shutdown()
        finally:
            self._transition(ProviderState.SHUTDOWN)

    async def _on_shutdown(self) -> None:
        return None

    async def resolve_bool(
        self,
        flag_key: str,
        default: bool,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[bool]:
        blocked = self._not_ready(flag_key, default)
        if blocked is not None:
            return blocked
        return await self._source().resolve_bool(
            flag_key, default, context, cancel_event=cancel_event
        )

    async def resolve_string(
        self,
        flag_key: str,
        default: str,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[str]:
        blocked = self._not_ready(flag_key, default)
        if blocked is not None:
            return blocked
        return await self._source().resolve_string(
            flag_key, default, context, cancel_event=cancel_event
        )

    async def resolve_int(
        self,
        flag_key: str,
        default: int,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[int]:
        blocked = self._not_ready(flag_key, default)
        if blocked is not None:
            return blocked
        return await self._source().resolve_int(
            flag_key, default, context, cancel_event=cancel_event
        )

    async def resolve_float(
        self,
        flag_key: str,
        default: float,
        context: EvaluationContext | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[float]:
        blocked = self._not_ready(flag_key, default)
        if blocked is not None:
            return blocked
        return await self._source().resolve_float(
            flag_key, default, context, cancel_event=cancel_event
        )

    async def resolve_structured(
        self,
        flag_key: str,
        default: Any,
        context: EvaluationContext | None = None,
        *,
        target: Any = None,
        cancel_event: asyncio.Event | None = None,
    ) -> ResolutionOutcome[Any]:
        blocked = self._not_ready(flag_key, default)
        if blocked is not None:
            return blocked
        return await self._source().resolve_structured(
            flag_key, default, context, target=target, cancel_event=cancel_event
        )


class ConfidenceProvider(_LifecycleProvider):
    """Confidence API でリモート解決するプロバイダー。

    初期化時の通信は行わず、コンテキストを記録した時点で READY になる。
    """

    provider_name = "confidence"

    def __init__(self, client: ConfidenceClient, logger: FilteringBoundLogger | None = None) -> None:
        super().__init__(logger)
        self._client = client

    @property
    def client(self) -> ConfidenceClient:
        return self._client

    async def initialize(self, context: EvaluationContext | None = None) -> None:
        self._transition(ProviderState.INITIALIZING)
        if context is not None:
            self._client = self._client.with_context(context)
        self._transition(ProviderState.READY)

    def _source(self) -> ConfidenceClient | FlagResolver:
        return self._client


class InMemoryProvider(_LifecycleProvider):
    """メモリ上のフラグを返すプロバイダー (テスト・ローカル開発向け)。"""

    provider_name = "in-memory"

    def __init__(self, logger: FilteringBoundLogger | None = None) -> None:
        super().__init__(logger)
        self._transport = InMemoryResolveTransport()
        self._resolver = FlagResolver(
            self._transport, IN_MEMORY_CLIENT_SECRET, logger=self._logger
        )

    def set_flag(
        self,
        name: str,
        value: Mapping[str, Any],
        variant: str = "",
        reason: ResolveReason = ResolveReason.MATCH,
    ) -> None:
        """フラグの値を設定する。既存の同名フラグは置き換える。"""
        self._transport.set_flag(
            ResolvedFlag(
                flag=full_flag_key(name),
                variant=variant,
                reason=str(reason),
                value=DynamicValue.of_object(value),
            )
        )

    async def initialize(self, context: EvaluationContext | None = None) -> None:
        self._transition(ProviderState.INITIALIZING)
        if context is not None:
            self._resolver = self._resolver.with_default_context(context)
        self._transition(ProviderState.READY)

    def _source(self) -> ConfidenceClient | FlagResolver:
        return self._resolver


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LocalProvider(_LifecycleProvider):
    """ローカル解決エンジンを使うプロバイダー。

    initialize() で warm_up() を待ち、成功した場合のみ READY になる。
    失敗した場合は FAILED_INIT に遷移し ConfidenceError を送出する。
    適用されたフラグは AssignmentLogger に蓄積し、flush_assignments() で送信する。
    """

    provider_name = "confidence-local"

    def __init__(
        self,
        resolver: LocalResolver,
        client_secret: str,
        client_identity: ClientIdentity,
        *,
        assignment_sink: AssignmentSink | None = None,
        client_id: str = "",
        logger: FilteringBoundLogger | None = None,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        super().__init__(logger)
        self._local = resolver
        self._client_identity = client_identity
        self._sink = assignment_sink
        self._clock = clock
        self._assignments = AssignmentLogger()
        self._resolver = FlagResolver(
            resolver,
            client_secret,
            client_id=client_id,
            logger=self._logger,
            apply_listener=self._record_assignment,
        )

    @property
    def pending_assignments(self) -> int:
        return len(self._assignments)

    def _record_assignment(self, resolve_id: str, flag: ResolvedFlag) -> None:
        self._assignments.add(resolve_id, flag, self._clock())

    async def initialize(self, context: EvaluationContext | None = None) -> None:
        """ローカル解決エンジンをウォームアップする。

        Raises:
            ConfidenceError: ウォームアップに失敗した場合 (PROVIDER_INIT_FAILED)
        """
        if self._state == ProviderState.FAILED_INIT:
            raise ConfidenceError(
                code=ConfidenceErrorCodes.PROVIDER_INIT_FAILED,
                message="Provider has already failed to initialize",
            )
        self._transition(ProviderState.INITIALIZING)
        try:
            await self._local.warm_up()
        except asyncio.CancelledError:
            self._transition(ProviderState.FAILED_INIT)
            raise
        except Exception as e:
            self._transition(ProviderState.FAILED_INIT)
            self._logger.error("provider_init_failed", error=str(e), exc_info=True)
            raise ConfidenceError(
                code=ConfidenceErrorCodes.PROVIDER_INIT_FAILED,
                message=f"Local resolver warm-up failed: {e}",
                cause=e,
            ) from e
        if context is not None:
            self._resolver = self._resolver.with_default_context(context)
        self._transition(ProviderState.READY)

    def _source(self) -> ConfidenceClient | FlagResolver:
        return self._resolver

    async def flush_assignments(self) -> list[FlagAssignedEvent]:
        """蓄積した割り当てを resolve_id ごとのイベントにまとめて送信する。

        送信失敗はログに記録するだけで送出しない。組み立てたイベントを返す。
        """
        events = [
            build_assignment_event(resolve_id, items, self._client_identity)
            for resolve_id, items in self._assignments.drain()
        ]
        if self._sink is None:
            return events
        for event in events:
            try:
                await self._sink.send(event)
            except Exception as e:
                self._logger.warning(
                    "assignment_flush_failed",
                    resolve_id=event.resolve_id,
                    flags=len(event.flags),
                    error=str(e),
                )
        return events

    async def _on_shutdown(self) -> None:
        await self.flush_assignments()
