"""フラグ評価コンテキスト"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from .values import DynamicValue

TARGETING_KEY = "targeting_key"


@dataclass(frozen=True)
class EvaluationContext:
    """フラグ評価コンテキスト。

    生成後は変更できない。attributes の値は DynamicValue に正規化される。
    targeting_key は送信時に attributes の予約キー ``targeting_key`` に注入される。
    """

    targeting_key: str | None = None
    attributes: Mapping[str, DynamicValue] = field(default_factory=dict)

    def __post_init__(self) -> None:
        normalized = {str(k): DynamicValue.from_python(v) for k, v in self.attributes.items()}
        object.__setattr__(self, "attributes", MappingProxyType(normalized))

    @classmethod
    def of(cls, targeting_key: str | None = None, **attributes: Any) -> EvaluationContext:
        """キーワード引数から組み立てる。"""
        return cls(targeting_key=targeting_key, attributes=attributes)

    def merge(self, override: EvaluationContext | None) -> EvaluationContext:
        """override の値を優先して結合した新しいコンテキストを返す。"""
        if override is None:
            return self
        attributes = dict(self.attributes)
        attributes.update(override.attributes)
        targeting_key = override.targeting_key if override.targeting_key else self.targeting_key
        return EvaluationContext(targeting_key=targeting_key, attributes=attributes)

    def to_wire(self) -> dict[str, Any]:
        """送信用の evaluation_context 辞書を返す。"""
        wire = {k: v.to_json() for k, v in self.attributes.items()}
        if self.targeting_key:
            wire[TARGETING_KEY] = self.targeting_key
        return wire

    def is_empty(self) -> bool:
        return not self.targeting_key and not self.attributes
