"""割り当てテレメトリー (FlagAssigned イベント) の組み立て"""

from __future__ import annotations

import threading
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from enum import StrEnum
from typing import Any

from .models import ClientIdentity, ResolvedFlag, ResolveReason


class DefaultAssignmentReason(StrEnum):
    """デフォルト割り当ての理由。区別するのは 2 種類のみ。"""

    UNSPECIFIED = "DEFAULT_ASSIGNMENT_REASON_UNSPECIFIED"
    NO_SEGMENT_MATCH = "NO_SEGMENT_MATCH"
    FLAG_ARCHIVED = "FLAG_ARCHIVED"


def to_default_assignment_reason(reason: ResolveReason) -> DefaultAssignmentReason:
    if reason == ResolveReason.NO_SEGMENT_MATCH:
        return DefaultAssignmentReason.NO_SEGMENT_MATCH
    if reason == ResolveReason.FLAG_ARCHIVED:
        return DefaultAssignmentReason.FLAG_ARCHIVED
    return DefaultAssignmentReason.UNSPECIFIED


@dataclass(frozen=True)
class FlagToApply:
    """適用されたフラグと適用時刻 (時計ずれ補正済み)。"""

    resolved_flag: ResolvedFlag
    applied_time: datetime


@dataclass(frozen=True)
class AssignmentInfo:
    segment: str
    variant: str


@dataclass(frozen=True)
class DefaultAssignment:
    reason: DefaultAssignmentReason


@dataclass(frozen=True)
class FlagAssignment:
    """1 フラグ分の割り当て記録。

    assignment_info (一致) と default_assignment (不一致) のどちらか一方だけを持つ。
    """

    resolve_id: str
    assignment_id: str
    flag: str
    apply_time_skew_adjusted: datetime
    targeting_key: str
    targeting_key_selector: str
    rule: str
    assignment_info: AssignmentInfo | None = None
    default_assignment: DefaultAssignment | None = None
    fallthrough_assignments: tuple[str, ...] = ()

    @property
    def is_match(self) -> bool:
        return self.assignment_info is not None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "assignmentId": self.assignment_id,
            "flag": self.flag,
            "applyTime": self.apply_time_skew_adjusted.isoformat(),
            "targetingKey": self.targeting_key,
            "targetingKeySelector": self.targeting_key_selector,
            "rule": self.rule,
            "fallthroughAssignments": list(self.fallthrough_assignments),
        }
        if self.assignment_info is not None:
            data["assignmentInfo"] = {
                "segment": self.assignment_info.segment,
                "variant": self.assignment_info.variant,
            }
        if self.default_assignment is not None:
            data["defaultAssignment"] = {"reason": str(self.default_assignment.reason)}
        return data


@dataclass(frozen=True)
class FlagAssignedEvent:
    """1 回の解決に対応する割り当てイベント。"""

    resolve_id: str
    client_identity: ClientIdentity
    flags: tuple[FlagAssignment, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "resolveId": self.resolve_id,
            "clientInfo": {
                "client": self.client_identity.client_name,
                "clientCredential": self.client_identity.client_credential_name,
                "sdk": {
                    "id": str(self.client_identity.sdk_id),
                    "version": self.client_identity.sdk_version,
                },
            },
            "flags": [f.to_dict() for f in self.flags],
        }


def build_flag_assignment(resolve_id: str, item: FlagToApply) -> FlagAssignment:
    flag = item.resolved_flag
    info: AssignmentInfo | None = None
    default: DefaultAssignment | None = None
    if flag.variant:
        info = AssignmentInfo(segment=flag.segment, variant=flag.variant)
    else:
        default = DefaultAssignment(reason=to_default_assignment_reason(flag.resolve_reason))
    return FlagAssignment(
        resolve_id=resolve_id,
        assignment_id=flag.assignment_id,
        flag=flag.flag,
        apply_time_skew_adjusted=item.applied_time,
        targeting_key=flag.targeting_key,
        targeting_key_selector=flag.targeting_key_selector,
        rule=flag.rule,
        assignment_info=info,
        default_assignment=default,
        fallthrough_assignments=tuple(flag.fallthrough_assignments),
    )


def build_assignment_event(
    resolve_id: str,
    flags_to_apply: Iterable[FlagToApply],
    client_identity: ClientIdentity,
) -> FlagAssignedEvent:
    """適用済みフラグから割り当てイベントを組み立てる。入力順を保つ純粋関数。"""
    return FlagAssignedEvent(
        resolve_id=resolve_id,
        client_identity=client_identity,
        flags=tuple(build_flag_assignment(resolve_id, item) for item in flags_to_apply),
    )


class AssignmentLogger:
    """適用済みフラグのスレッドセーフなバッファ。

    送信は外部のチェックポイント処理が drain() で取り出して行う。
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._pending: list[tuple[str, FlagToApply]] = []

    def add(self, resolve_id: str, flag: ResolvedFlag, applied_time: datetime) -> None:
        with self._lock:
            self._pending.append((resolve_id, FlagToApply(flag, applied_time)))

    def __len__(self) -> int:
        with self._lock:
            return len(self._pending)

    def drain(self) -> list[tuple[str, list[FlagToApply]]]:
        """バッファを空にし、resolve_id ごとに初出順でまとめて返す。"""
        with self._lock:
            pending, self._pending = self._pending, []
        grouped: dict[str, list[FlagToApply]] = {}
        for resolve_id, item in pending:
            grouped.setdefault(resolve_id, []).append(item)
        return list(grouped.items())
