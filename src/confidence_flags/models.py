"""Confidence データモデル"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from importlib.metadata import PackageNotFoundError, version
from typing import Any, Generic, TypeVar

from .context import EvaluationContext
from .exceptions import ConfidenceError, ConfidenceErrorCodes
from .values import DynamicValue

T = TypeVar("T")

FLAG_PREFIX = "flags/"
REASON_DEFAULT = "DEFAULT"
REASON_ERROR = "ERROR"
REASON_CANCELLED = "CANCELLED"
REASON_PROVIDER_NOT_READY = "PROVIDER_NOT_READY"


def _sdk_version() -> str:
    try:
        return version("confidence-flags")
    except PackageNotFoundError:
        return "unknown"


SDK_VERSION = _sdk_version()


class ResolveReason(StrEnum):
    """サーバーが返す解決理由。"""

    UNSPECIFIED = "RESOLVE_REASON_UNSPECIFIED"
    MATCH = "RESOLVE_REASON_MATCH"
    NO_SEGMENT_MATCH = "RESOLVE_REASON_NO_SEGMENT_MATCH"
    NO_TREATMENT_MATCH = "RESOLVE_REASON_NO_TREATMENT_MATCH"
    FLAG_ARCHIVED = "RESOLVE_REASON_FLAG_ARCHIVED"
    TARGETING_KEY_ERROR = "RESOLVE_REASON_TARGETING_KEY_ERROR"
    ERROR = "RESOLVE_REASON_ERROR"

    @classmethod
    def parse(cls, raw: str | None) -> ResolveReason:
        """未知の文字列は UNSPECIFIED として扱う。"""
        if not raw:
            return cls.UNSPECIFIED
        try:
            return cls(raw)
        except ValueError:
            return cls.UNSPECIFIED


class SdkId(StrEnum):
    """SDK 識別子。"""

    PYTHON_CONFIDENCE = "SDK_ID_PYTHON_CONFIDENCE"


@dataclass(frozen=True)
class SdkInfo:
    """リクエストに付与する SDK 情報。"""

    id: SdkId = SdkId.PYTHON_CONFIDENCE
    version: str = SDK_VERSION

    def to_dict(self) -> dict[str, str]:
        return {"id": str(self.id), "version": self.version}


def strip_flag_prefix(flag: str) -> str:
    return flag[len(FLAG_PREFIX) :] if flag.startswith(FLAG_PREFIX) else flag


def full_flag_key(flag_name: str) -> str:
    return flag_name if flag_name.startswith(FLAG_PREFIX) else f"{FLAG_PREFIX}{flag_name}"


@dataclass(frozen=True)
class ResolvedFlag:
    """解決済みフラグ。

    assignment_id 以降のフィールドはローカルリゾルバーが返す割り当て情報で、
    リモート解決では空になる。
    """

    flag: str
    variant: str = ""
    reason: str = ""
    value: DynamicValue = field(default_factory=lambda: DynamicValue.of_object({}))
    schema: dict[str, Any] = field(default_factory=dict)
    assignment_id: str = ""
    targeting_key: str = ""
    targeting_key_selector: str = ""
    rule: str = ""
    segment: str = ""
    fallthrough_assignments: tuple[str, ...] = ()

    @property
    def name(self) -> str:
        """``flags/`` プレフィックスを除いたフラグ名。"""
        return strip_flag_prefix(self.flag)

    @property
    def resolve_reason(self) -> ResolveReason:
        return ResolveReason.parse(self.reason)

    @property
    def has_value(self) -> bool:
        return self.value.is_object and len(self.value.payload) > 0

    def matches(self, flag_name: str) -> bool:
        """リクエストしたフラグ名と一致するか (大文字小文字を区別しない)。"""
        own = self.flag.casefold()
        return own in (flag_name.casefold(), full_flag_key(flag_name).casefold())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ResolvedFlag:
        raw_value = data.get("value")
        value = DynamicValue.from_python(raw_value if raw_value is not None else {})
        if not value.is_object:
            raise ValueError(f"flag value must be an object, got {value.kind}")
        schema = data.get("flagSchema") or {}
        return cls(
            flag=data["flag"],
            variant=data.get("variant") or "",
            reason=data.get("reason") or "",
            value=value,
            schema=dict(schema),
            assignment_id=data.get("assignmentId") or "",
            targeting_key=data.get("targetingKey") or "",
            targeting_key_selector=data.get("targetingKeySelector") or "",
            rule=data.get("rule") or "",
            segment=data.get("segment") or "",
            fallthrough_assignments=tuple(data.get("fallthroughAssignments") or ()),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "flag": self.flag,
            "variant": self.variant,
            "reason": self.reason,
            "value": self.value.to_json(),
            "flagSchema": self.schema,
        }


@dataclass(frozen=True)
class ResolveRequest:
    """フラグ解決リクエスト。flag_keys にはベースフラグ名のみを入れる。"""

    flag_keys: frozenset[str]
    context: EvaluationContext
    client_secret: str
    apply: bool = True
    client_id: str = ""
    sdk: SdkInfo = field(default_factory=SdkInfo)

    @classmethod
    def for_flags(
        cls,
        flag_keys: Iterable[str],
        context: EvaluationContext,
        client_secret: str,
        apply: bool = True,
        client_id: str = "",
    ) -> ResolveRequest:
        return cls(
            flag_keys=frozenset(flag_keys),
            context=context,
            client_secret=client_secret,
            apply=apply,
            client_id=client_id,
        )

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {
            "client_secret": self.client_secret,
            "apply": self.apply,
            "evaluation_context": self.context.to_wire(),
            "flags": sorted(full_flag_key(k) for k in self.flag_keys),
            "sdk": self.sdk.to_dict(),
        }
        if self.client_id:
            body["client_id"] = self.client_id
        return body


@dataclass(frozen=True)
class ResolveResponse:
    """フラグ解決レスポンス。"""

    resolved_flags: tuple[ResolvedFlag, ...] = ()
    resolve_token: str = ""
    resolve_id: str = ""

    def find(self, flag_name: str) -> ResolvedFlag | None:
        for flag in self.resolved_flags:
            if flag.matches(flag_name):
                return flag
        return None

    @classmethod
    def from_dict(cls, data: Any) -> ResolveResponse:
        """ワイヤー JSON から生成する。

        Raises:
            ConfidenceError: 構造が不正な場合 (DESERIALIZATION_FAILURE)
        """
        try:
            if not isinstance(data, dict):
                raise ValueError(f"expected object, got {type(data).__name__}")
            flags = tuple(ResolvedFlag.from_dict(f) for f in data.get("resolvedFlags") or [])
            return cls(
                resolved_flags=flags,
                resolve_token=data.get("resolveToken") or "",
                resolve_id=data.get("resolveId") or "",
            )
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise ConfidenceError(
                code=ConfidenceErrorCodes.DESERIALIZATION_FAILURE,
                message=f"Malformed resolve response: {e}",
                cause=e,
            ) from e


@dataclass(frozen=True)
class ResolutionOutcome(Generic[T]):
    """フラグ解決結果。失敗時の value は常に呼び出し側のデフォルト値。"""

    value: T
    reason: str
    variant: str | None = None
    success: bool = True
    error_message: str | None = None
    error_code: str | None = None

    @classmethod
    def resolved(cls, value: T, reason: str | None, variant: str | None) -> ResolutionOutcome[T]:
        return cls(value=value, reason=reason or REASON_DEFAULT, variant=variant or None)

    @classmethod
    def failure(
        cls,
        default: T,
        error_code: str,
        error_message: str,
        reason: str = REASON_ERROR,
    ) -> ResolutionOutcome[T]:
        return cls(
            value=default,
            reason=reason,
            success=False,
            error_message=error_message,
            error_code=error_code,
        )


@dataclass(frozen=True)
class ClientIdentity:
    """テレメトリーに載せるクライアント識別情報。"""

    client_name: str
    client_credential_name: str
    sdk_id: SdkId = SdkId.PYTHON_CONFIDENCE
    sdk_version: str = SDK_VERSION


@dataclass(frozen=True)
class Event:
    """トラッキングイベント。"""

    event_definition: str
    event_time: datetime
    payload: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_definition": self.event_definition,
            "event_time": self.event_time.isoformat(),
            "payload": self.payload,
        }


@dataclass(frozen=True)
class EventBatch:
    """イベント送信リクエスト。"""

    client_secret: str
    send_time: datetime
    events: tuple[Event, ...]
    sdk: SdkInfo = field(default_factory=SdkInfo)

    def to_dict(self) -> dict[str, Any]:
        return {
            "client_secret": self.client_secret,
            "sdk": self.sdk.to_dict(),
            "send_time": self.send_time.isoformat(),
            "events": [e.to_dict() for e in self.events],
        }
