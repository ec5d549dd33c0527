"""DynamicValue から要求型への変換

変換は (要求型, DynamicValue の種類) の組み合わせに対する純粋なディスパッチで行う。
失敗してもデフォルト値を返し、例外は送出しない。
"""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from functools import lru_cache
from typing import Any, TypeVar

from pydantic import TypeAdapter, ValidationError

from .values import DynamicValue, ValueKind

T = TypeVar("T")


class _CoercionMismatch(Exception):
    pass


def coerce(raw: DynamicValue | None, default: T, target: Any = None) -> T:
    """raw を要求型に変換する。失敗時は default を返す。"""
    value, _ = coerce_with_error(raw, default, target)
    return value


def coerce_with_error(
    raw: DynamicValue | None, default: T, target: Any = None
) -> tuple[T, str | None]:
    """raw を要求型に変換し、(値, エラーメッセージ) を返す。

    Args:
        raw: 変換元。None または Null はデフォルト値を返す。
        default: 変換できない場合に返す値
        target: 要求型。省略時は ``type(default)``

    Returns:
        成功時は (変換後の値, None)、失敗時は (default, 理由)
    """
    if raw is None or raw.is_null:
        return default, None
    if target is None:
        if default is None:
            return raw.to_python(), None
        target = type(default)
    try:
        return _convert(raw, target), None
    except _CoercionMismatch as e:
        return default, str(e)
    except ValidationError as e:
        return default, f"Cannot deserialize {raw.kind} value into {_type_name(target)}: {e}"
    except Exception as e:
        return default, f"Cannot coerce {raw.kind} value to {_type_name(target)}: {e}"


def _convert(raw: DynamicValue, target: Any) -> Any:
    if target is DynamicValue:
        return raw
    if target is bool:
        if raw.kind == ValueKind.BOOL:
            return raw.payload
        raise _mismatch(raw, target)
    if target is str:
        return _to_text(raw)
    if target is int:
        return _to_int(raw)
    if target is float:
        if raw.is_numeric:
            return float(raw.payload)
        raise _mismatch(raw, target)
    if target is Decimal:
        if raw.kind == ValueKind.INT:
            return Decimal(raw.payload)
        if raw.kind == ValueKind.FLOAT:
            return Decimal(str(raw.payload))
        raise _mismatch(raw, target)
    if target is datetime:
        if raw.kind == ValueKind.TIMESTAMP:
            return raw.payload
        if raw.kind == ValueKind.STRING:
            try:
                return datetime.fromisoformat(raw.payload)
            except ValueError as e:
                raise _CoercionMismatch(f"Cannot parse timestamp from {raw.payload!r}") from e
        raise _mismatch(raw, target)
    if target is dict:
        if raw.kind == ValueKind.OBJECT:
            return raw.to_python()
        raise _mismatch(raw, target)
    if target in (list, tuple):
        if raw.kind == ValueKind.ARRAY:
            return target(raw.to_python())
        raise _mismatch(raw, target)
    # 構造体 (dataclass, pydantic モデル, 型付きコレクションなど)
    if raw.kind not in (ValueKind.OBJECT, ValueKind.ARRAY):
        raise _mismatch(raw, target)
    return _adapter(target).validate_python(raw.to_python())


def _to_text(raw: DynamicValue) -> str:
    if raw.kind == ValueKind.STRING:
        return raw.payload
    if raw.kind == ValueKind.BOOL:
        return "true" if raw.payload else "false"
    if raw.kind == ValueKind.TIMESTAMP:
        return raw.payload.isoformat()
    if raw.kind in (ValueKind.OBJECT, ValueKind.ARRAY):
        return json.dumps(raw.to_json())
    return str(raw.payload)


def _to_int(raw: DynamicValue) -> int:
    if raw.kind == ValueKind.INT:
        return raw.payload
    if raw.kind == ValueKind.FLOAT:
        if raw.payload.is_integer():
            return int(raw.payload)
        raise _CoercionMismatch(f"Cannot coerce non-integral value {raw.payload} to int")
    raise _mismatch(raw, int)


@lru_cache(maxsize=128)
def _adapter(target: Any) -> TypeAdapter[Any]:
    return TypeAdapter(target)


def _mismatch(raw: DynamicValue, target: Any) -> _CoercionMismatch:
    return _CoercionMismatch(f"Cannot coerce {raw.kind} value to {_type_name(target)}")


def _type_name(target: Any) -> str:
    return getattr(target, "__name__", repr(target))
