"""フラグプロバイダーのユニットテスト"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone

import pytest
from confidence_flags.client import ConfidenceClient
from confidence_flags.config import ConfidenceOptions
from confidence_flags.context import EvaluationContext
from confidence_flags.exceptions import ConfidenceError, ConfidenceErrorCodes
from confidence_flags.models import ClientIdentity, ResolvedFlag, ResolveReason, ResolveRequest, ResolveResponse
from confidence_flags.provider import (
    ConfidenceProvider,
    FlagProvider,
    InMemoryProvider,
    LocalProvider,
    ProviderState,
    _LifecycleProvider,
)
from confidence_flags.telemetry import FlagAssignedEvent
from confidence_flags.transport import InMemoryResolveTransport
from confidence_flags.values import DynamicValue

NOW = datetime(2024, 6, 1, 9, 30, tzinfo=timezone.utc)
IDENTITY = ClientIdentity(client_name="clients/svc", client_credential_name="clients/svc/credentials/1")


class FakeLocalResolver:
    def __init__(self, flags: list[ResolvedFlag], fail: bool = False) -> None:
        self._flags = {f.name: f for f in flags}
        self._fail = fail
        self.warmed_up = False
        self.requests: list[ResolveRequest] = []

    async def warm_up(self) -> None:
        if self._fail:
            raise RuntimeError("state fetch failed")
        self.warmed_up = True

    async def resolve(self, request: ResolveRequest) -> ResolveResponse:
        self.requests.append(request)
        found = tuple(self._flags[k] for k in sorted(request.flag_keys) if k in self._flags)
        return ResolveResponse(resolved_flags=found, resolve_token="token", resolve_id=f"rid-{len(self.requests)}")


class RecordingSink:
    def __init__(self, fail: bool = False) -> None:
        self.events: list[FlagAssignedEvent] = []
        self._fail = fail

    async def send(self, event: FlagAssignedEvent) -> None:
        if self._fail:
            raise RuntimeError("sink down")
        self.events.append(event)


def local_flags() -> list[ResolvedFlag]:
    return [
        ResolvedFlag(
            flag="flags/search",
            variant="flags/search/variants/fast",
            reason="RESOLVE_REASON_MATCH",
            value=DynamicValue.from_python({"enabled": True, "limit": 50}),
            assignment_id="a-1",
            targeting_key="user-1",
            segment="segments/all",
        ),
        ResolvedFlag(flag="flags/beta", reason="RESOLVE_REASON_NO_SEGMENT_MATCH", assignment_id="a-2"),
    ]


def make_local_provider(sink: RecordingSink | None = None, fail: bool = False) -> LocalProvider:
    return LocalProvider(
        FakeLocalResolver(local_flags(), fail=fail),
        "secret",
        IDENTITY,
        assignment_sink=sink,
        clock=lambda: NOW,
    )


async def test_in_memory_provider_lifecycle() -> None:
    """初期化前は PROVIDER_NOT_READY、初期化後は解決できること。"""
    provider = InMemoryProvider()
    provider.set_flag("feature", {"enabled": True, "limit": 10}, variant="on")
    assert provider.name == "in-memory"
    assert provider.state == ProviderState.NOT_READY

    outcome = await provider.resolve_bool("feature.enabled", False)
    assert outcome.value is False
    assert outcome.reason == "PROVIDER_NOT_READY"
    assert outcome.error_code == ConfidenceErrorCodes.PROVIDER_NOT_READY

    await provider.initialize()
    assert provider.state == ProviderState.READY
    outcome = await provider.resolve_bool("feature.enabled", False)
    assert outcome.value is True
    assert outcome.reason == str(ResolveReason.MATCH)
    assert outcome.variant == "on"
    assert (await provider.resolve_int("feature.limit", 0)).value == 10
    assert (await provider.resolve_float("feature.limit", 0.0)).value == 10.0
    assert (await provider.resolve_string("feature.missing", "x")).value == "x"
    assert (await provider.resolve_structured("feature", {})).value == {"enabled": True, "limit": 10}

    await provider.shutdown()
    assert provider.state == ProviderState.SHUTDOWN
    outcome = await provider.resolve_bool("feature.enabled", False)
    assert outcome.reason == "PROVIDER_NOT_READY"


async def test_in_memory_provider_is_flag_provider() -> None:
    """プロトコルを満たすこと。"""
    provider: FlagProvider = InMemoryProvider()
    await provider.initialize(EvaluationContext.of("user-1"))
    assert provider.state == ProviderState.READY


async def test_confidence_provider_records_context() -> None:
    """初期化時のコンテキストがクライアントに反映されること。"""
    transport = InMemoryResolveTransport()
    transport.set_flag(
        ResolvedFlag(flag="flags/f", variant="v", value=DynamicValue.from_python({"on": True}))
    )
    client = ConfidenceClient(ConfidenceOptions(client_secret="secret"), resolve_transport=transport)
    provider = ConfidenceProvider(client)
    await provider.initialize(EvaluationContext.of("user-7", country="SE"))
    assert provider.state == ProviderState.READY
    assert provider.client.context.targeting_key == "user-7"

    outcome = await provider.resolve_bool("f.on", False)
    assert outcome.value is True
    assert transport.requests[-1].context.to_wire() == {"country": "SE", "targeting_key": "user-7"}


async def test_local_provider_warm_up() -> None:
    """ウォームアップ成功で READY になること。"""
    provider = make_local_provider()
    await provider.initialize()
    assert provider.state == ProviderState.READY
    assert (await provider.resolve_int("search.limit", 0)).value == 50


async def test_local_provider_warm_up_failure() -> None:
    """ウォームアップ失敗は FAILED_INIT と PROVIDER_INIT_FAILED。"""
    provider = make_local_provider(fail=True)
    with pytest.raises(ConfidenceError) as exc_info:
        await provider.initialize()
    assert exc_info.value.code == ConfidenceErrorCodes.PROVIDER_INIT_FAILED
    assert isinstance(exc_info.value.__cause__, RuntimeError)
    assert provider.state == ProviderState.FAILED_INIT

    outcome = await provider.resolve_bool("search.enabled", False)
    assert outcome.reason == "PROVIDER_NOT_READY"

    with pytest.raises(ConfidenceError):
        await provider.initialize()


async def test_local_provider_flushes_assignments() -> None:
    """適用されたフラグが resolve_id ごとのイベントとして送信されること。"""
    sink = RecordingSink()
    provider = make_local_provider(sink)
    await provider.initialize()
    await provider.resolve_bool("search.enabled", False)
    await provider.resolve_bool("beta.enabled", False)
    assert provider.pending_assignments == 2

    events = await provider.flush_assignments()
    assert [e.resolve_id for e in events] == ["rid-1", "rid-2"]
    assert sink.events == events
    assert provider.pending_assignments == 0

    matched = events[0].flags[0]
    assert matched.assignment_info is not None
    assert matched.assignment_info.variant == "flags/search/variants/fast"
    assert matched.apply_time_skew_adjusted == NOW
    unmatched = events[1].flags[0]
    assert unmatched.default_assignment is not None
    assert events[1].to_dict()["clientInfo"]["client"] == "clients/svc"


async def test_local_provider_not_found_is_not_recorded() -> None:
    """存在しないフラグは割り当てに記録しないこと。"""
    provider = make_local_provider()
    await provider.initialize()
    outcome = await provider.resolve_bool("missing.enabled", True)
    assert outcome.error_code == ConfidenceErrorCodes.FLAG_NOT_FOUND
    assert provider.pending_assignments == 0


async def test_local_provider_sink_failure_is_swallowed() -> None:
    """送信失敗は送出しないこと。"""
    provider = make_local_provider(RecordingSink(fail=True))
    await provider.initialize()
    await provider.resolve_bool("search.enabled", False)
    events = await provider.flush_assignments()
    assert len(events) == 1


async def test_local_provider_shutdown_flushes() -> None:
    """shutdown 時に蓄積分を送信すること。"""
    sink = RecordingSink()
    provider = make_local_provider(sink)
    await provider.initialize()
    await provider.resolve_string("search.limit", "")
    await provider.shutdown()
    assert provider.state == ProviderState.SHUTDOWN
    assert len(sink.events) == 1


@dataclass
class Limits:
    enabled: bool
    limit: int


async def test_provider_resolve_cancelled() -> None:
    """キャンセル済みの cancel_event を渡すと CANCELLED で返ること。"""
    provider = InMemoryProvider()
    provider.set_flag("feature", {"enabled": True})
    await provider.initialize()
    cancel = asyncio.Event()
    cancel.set()

    outcome = await provider.resolve_bool("feature.enabled", False, cancel_event=cancel)
    assert outcome.value is False
    assert outcome.reason == "CANCELLED"
    assert outcome.error_code == ConfidenceErrorCodes.CANCELLED
    assert (await provider.resolve_string("feature.x", "d", cancel_event=cancel)).reason == "CANCELLED"
    assert (await provider.resolve_int("feature.x", 1, cancel_event=cancel)).reason == "CANCELLED"
    assert (await provider.resolve_float("feature.x", 1.0, cancel_event=cancel)).reason == "CANCELLED"
    assert (await provider.resolve_structured("feature", {}, cancel_event=cancel)).reason == "CANCELLED"


async def test_local_provider_cancelled_resolve_is_not_recorded() -> None:
    """キャンセルされた解決は割り当てに記録しないこと。"""
    provider = make_local_provider()
    await provider.initialize()
    cancel = asyncio.Event()
    cancel.set()
    outcome = await provider.resolve_bool("search.enabled", False, cancel_event=cancel)
    assert outcome.reason == "CANCELLED"
    assert provider.pending_assignments == 0


async def test_provider_resolve_structured_target() -> None:
    """target で指定した型に復元すること。"""
    provider = make_local_provider()
    await provider.initialize()
    outcome = await provider.resolve_structured("search", None, target=Limits)
    assert outcome.value == Limits(enabled=True, limit=50)


def test_lifecycle_provider_is_abstract() -> None:
    """initialize と _source を実装しないサブクラスは生成できないこと。"""

    class Incomplete(_LifecycleProvider):
        provider_name = "incomplete"

    with pytest.raises(TypeError):
        Incomplete(None)  # type: ignore[abstract]
