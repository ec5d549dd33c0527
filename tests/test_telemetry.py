"""割り当てテレメトリーのユニットテスト"""

import threading
from datetime import datetime, timezone

from confidence_flags.models import ClientIdentity, ResolvedFlag, ResolveReason
from confidence_flags.telemetry import (
    AssignmentLogger,
    DefaultAssignmentReason,
    FlagToApply,
    build_assignment_event,
    to_default_assignment_reason,
)
from confidence_flags.values import DynamicValue

APPLIED_AT = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
IDENTITY = ClientIdentity(
    client_name="clients/web",
    client_credential_name="clients/web/credentials/1",
    sdk_version="1.2.3",
)


def make_flag(name: str, variant: str = "", reason: str = "RESOLVE_REASON_MATCH") -> ResolvedFlag:
    return ResolvedFlag(
        flag=f"flags/{name}",
        variant=variant,
        reason=reason,
        value=DynamicValue.from_python({"enabled": True} if variant else {}),
        assignment_id=f"assign-{name}",
        targeting_key="user-1",
        targeting_key_selector="targeting_key",
        rule=f"flags/{name}/rules/1",
        segment="segments/all" if variant else "",
        fallthrough_assignments=("flags/x/rules/0",),
    )


def test_matched_flag_has_assignment_info() -> None:
    """バリアントがあれば AssignmentInfo を持つこと。"""
    event = build_assignment_event(
        "rid-1", [FlagToApply(make_flag("a", "flags/a/variants/on"), APPLIED_AT)], IDENTITY
    )
    assignment = event.flags[0]
    assert assignment.is_match
    assert assignment.assignment_info is not None
    assert assignment.assignment_info.segment == "segments/all"
    assert assignment.assignment_info.variant == "flags/a/variants/on"
    assert assignment.default_assignment is None
    assert assignment.resolve_id == "rid-1"


def test_unmatched_flag_has_default_assignment() -> None:
    """バリアントが無ければ DefaultAssignment を持つこと。"""
    flag = make_flag("b", reason="RESOLVE_REASON_NO_SEGMENT_MATCH")
    assignment = build_assignment_event("rid-1", [FlagToApply(flag, APPLIED_AT)], IDENTITY).flags[0]
    assert not assignment.is_match
    assert assignment.assignment_info is None
    assert assignment.default_assignment is not None
    assert assignment.default_assignment.reason == DefaultAssignmentReason.NO_SEGMENT_MATCH


def test_default_reason_mapping() -> None:
    """理由の対応付け。区別しない理由は UNSPECIFIED。"""
    assert to_default_assignment_reason(ResolveReason.FLAG_ARCHIVED) == DefaultAssignmentReason.FLAG_ARCHIVED
    assert to_default_assignment_reason(ResolveReason.NO_SEGMENT_MATCH) == DefaultAssignmentReason.NO_SEGMENT_MATCH
    assert to_default_assignment_reason(ResolveReason.TARGETING_KEY_ERROR) == DefaultAssignmentReason.UNSPECIFIED
    assert to_default_assignment_reason(ResolveReason.MATCH) == DefaultAssignmentReason.UNSPECIFIED


def test_order_is_preserved() -> None:
    """入力順が保たれること。"""
    items = [FlagToApply(make_flag(name, "v"), APPLIED_AT) for name in ("c", "a", "b")]
    event = build_assignment_event("rid-1", items, IDENTITY)
    assert [f.flag for f in event.flags] == ["flags/c", "flags/a", "flags/b"]


def test_event_to_dict() -> None:
    """ワイヤー形式。"""
    event = build_assignment_event(
        "rid-9",
        [
            FlagToApply(make_flag("a", "flags/a/variants/on"), APPLIED_AT),
            FlagToApply(make_flag("b", reason="RESOLVE_REASON_FLAG_ARCHIVED"), APPLIED_AT),
        ],
        IDENTITY,
    )
    data = event.to_dict()
    assert data["resolveId"] == "rid-9"
    assert data["clientInfo"] == {
        "client": "clients/web",
        "clientCredential": "clients/web/credentials/1",
        "sdk": {"id": "SDK_ID_PYTHON_CONFIDENCE", "version": "1.2.3"},
    }
    first, second = data["flags"]
    assert first["applyTime"] == APPLIED_AT.isoformat()
    assert first["assignmentInfo"] == {"segment": "segments/all", "variant": "flags/a/variants/on"}
    assert "defaultAssignment" not in first
    assert first["fallthroughAssignments"] == ["flags/x/rules/0"]
    assert second["defaultAssignment"] == {"reason": "FLAG_ARCHIVED"}
    assert "assignmentInfo" not in second


def test_empty_batch() -> None:
    """空の入力は空のイベント。"""
    assert build_assignment_event("rid-1", [], IDENTITY).flags == ()


def test_assignment_logger_groups_by_resolve_id() -> None:
    """resolve_id ごとに初出順でまとめ、バッファを空にすること。"""
    buffer = AssignmentLogger()
    buffer.add("rid-2", make_flag("a", "v"), APPLIED_AT)
    buffer.add("rid-1", make_flag("b", "v"), APPLIED_AT)
    buffer.add("rid-2", make_flag("c", "v"), APPLIED_AT)
    assert len(buffer) == 3

    drained = buffer.drain()
    assert [rid for rid, _ in drained] == ["rid-2", "rid-1"]
    assert [item.resolved_flag.name for item in drained[0][1]] == ["a", "c"]
    assert len(buffer) == 0
    assert buffer.drain() == []


def test_assignment_logger_concurrent_add() -> None:
    """複数スレッドからの追加で取りこぼしが無いこと。"""
    buffer = AssignmentLogger()
    flag = make_flag("a", "v")

    def worker(n: int) -> None:
        for _ in range(100):
            buffer.add(f"rid-{n}", flag, APPLIED_AT)

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    drained = buffer.drain()
    assert len(drained) == 8
    assert sum(len(items) for _, items in drained) == 800
