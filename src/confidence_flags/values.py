"""動的値 (DynamicValue) の定義

ワイヤーやホスト側の値はすべて DynamicValue に変換してから扱う。
ナビゲーションと型変換はこのタグ付き共用体に対してのみ行う。
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from types import MappingProxyType
from typing import Any


class ValueKind(StrEnum):
    """DynamicValue のタグ。"""

    NULL = "null"
    BOOL = "bool"
    INT = "int"
    FLOAT = "float"
    STRING = "string"
    TIMESTAMP = "timestamp"
    OBJECT = "object"
    ARRAY = "array"


@dataclass(frozen=True, eq=True)
class DynamicValue:
    """任意の生値を表すタグ付き共用体。

    ``payload`` の型は ``kind`` によって決まる:

    - NULL: None
    - BOOL: bool
    - INT: int
    - FLOAT: float
    - STRING: str
    - TIMESTAMP: datetime
    - OBJECT: Mapping[str, DynamicValue] (読み取り専用)
    - ARRAY: tuple[DynamicValue, ...]
    """

    kind: ValueKind
    payload: Any = None

    @classmethod
    def null(cls) -> DynamicValue:
        return cls(ValueKind.NULL)

    @classmethod
    def of_bool(cls, value: bool) -> DynamicValue:
        return cls(ValueKind.BOOL, bool(value))

    @classmethod
    def of_int(cls, value: int) -> DynamicValue:
        return cls(ValueKind.INT, int(value))

    @classmethod
    def of_float(cls, value: float) -> DynamicValue:
        return cls(ValueKind.FLOAT, float(value))

    @classmethod
    def of_string(cls, value: str) -> DynamicValue:
        return cls(ValueKind.STRING, str(value))

    @classmethod
    def of_timestamp(cls, value: datetime) -> DynamicValue:
        return cls(ValueKind.TIMESTAMP, value)

    @classmethod
    def of_object(cls, fields: Mapping[str, Any]) -> DynamicValue:
        converted = {str(k): cls.from_python(v) for k, v in fields.items()}
        return cls(ValueKind.OBJECT, MappingProxyType(converted))

    @classmethod
    def of_array(cls, items: Sequence[Any]) -> DynamicValue:
        return cls(ValueKind.ARRAY, tuple(cls.from_python(v) for v in items))

    @classmethod
    def from_python(cls, value: Any) -> DynamicValue:
        """ホスト値 (JSON デコード結果など) を DynamicValue に変換する。

        Raises:
            TypeError: 表現できない型が渡された場合
        """
        if isinstance(value, DynamicValue):
            return value
        if value is None:
            return cls.null()
        # bool は int のサブクラスなので先に判定する
        if isinstance(value, bool):
            return cls.of_bool(value)
        if isinstance(value, int):
            return cls.of_int(value)
        if isinstance(value, (float, Decimal)):
            return cls.of_float(float(value))
        if isinstance(value, str):
            return cls.of_string(value)
        if isinstance(value, datetime):
            return cls.of_timestamp(value)
        if isinstance(value, Mapping):
            return cls.of_object(value)
        if isinstance(value, (list, tuple)):
            return cls.of_array(value)
        raise TypeError(f"Unsupported value type: {type(value).__name__}")

    def to_python(self) -> Any:
        """DynamicValue をプレーンな Python 値に戻す。"""
        if self.kind == ValueKind.OBJECT:
            return {k: v.to_python() for k, v in self.payload.items()}
        if self.kind == ValueKind.ARRAY:
            return [v.to_python() for v in self.payload]
        return self.payload

    def to_json(self) -> Any:
        """JSON シリアライズ可能な値に変換する (Timestamp は ISO 8601 文字列)。"""
        if self.kind == ValueKind.TIMESTAMP:
            return self.payload.isoformat()
        if self.kind == ValueKind.OBJECT:
            return {k: v.to_json() for k, v in self.payload.items()}
        if self.kind == ValueKind.ARRAY:
            return [v.to_json() for v in self.payload]
        return self.payload

    @property
    def is_null(self) -> bool:
        return self.kind == ValueKind.NULL

    @property
    def is_object(self) -> bool:
        return self.kind == ValueKind.OBJECT

    @property
    def is_numeric(self) -> bool:
        return self.kind in (ValueKind.INT, ValueKind.FLOAT)

    def get(self, key: str) -> DynamicValue | None:
        """Object の場合にキーを引く。Object 以外やキーなしは None。"""
        if self.kind != ValueKind.OBJECT:
            return None
        return self.payload.get(key)
