"""ドット記法のフラグキー解析とネスト値の探索"""

from __future__ import annotations

from collections.abc import Sequence

from .values import DynamicValue

VALUE_KEY = "value"


def parse(flag_key: str) -> tuple[str, list[str]]:
    """フラグキーをベースフラグ名とプロパティパスに分割する。

    ``"a.b.c"`` は ``("a", ["b", "c"])`` になる。空文字列は ``("", [])``。
    連続したドットによる空セグメントはそのまま残す。
    """
    if not flag_key:
        return "", []
    name, *path = flag_key.split(".")
    return name, path


def navigate(root: DynamicValue | None, path: Sequence[str]) -> DynamicValue | None:
    """root からパスに沿って Object を辿り、到達した値を返す。

    途中で Object 以外に当たるかキーが無い場合は None を返す (エラーではない)。
    空パスなら root をそのまま返す。
    """
    current = root
    for segment in path:
        if current is None or not current.is_object:
            return None
        current = current.get(segment)
    return current


def extract_flag_value(resolved_value: DynamicValue, path: Sequence[str]) -> DynamicValue | None:
    """解決済みフラグの値から、パスが指す値を取り出す。

    値が ``"value"`` キーで包まれている場合はその中身から探索を始める。
    """
    wrapped = resolved_value.get(VALUE_KEY)
    start = wrapped if wrapped is not None else resolved_value
    return navigate(start, path)
