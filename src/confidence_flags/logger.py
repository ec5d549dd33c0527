"""structlog ベースのロガー生成

グローバルな structlog 設定は変更しない。ロガーは各コンポーネントに明示的に渡す。
"""

from __future__ import annotations

import logging
import sys
from typing import Any

import structlog
from structlog.typing import EventDict, FilteringBoundLogger, Processor, WrappedLogger


def _drop_event(logger: WrappedLogger, method_name: str, event_dict: EventDict) -> EventDict:
    raise structlog.DropEvent


def null_logger() -> FilteringBoundLogger:
    """すべてのイベントを破棄するロガーを返す。"""
    return structlog.wrap_logger(
        structlog.ReturnLogger(),
        processors=[_drop_event],
        wrapper_class=structlog.make_filtering_bound_logger(logging.CRITICAL),
    )


def new_logger(level: str = "INFO", format: str = "json", **initial_values: Any) -> FilteringBoundLogger:
    """標準出力に書き出すロガーを返す。

    Args:
        level: ログレベル ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
        format: 出力形式 ("json" or "text")
        initial_values: すべてのイベントに付与するキー

    Returns:
        level でフィルタされた structlog ロガー
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    processors: list[Processor]
    if format == "json":
        processors = [
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors = [
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ]

    return structlog.wrap_logger(
        structlog.PrintLogger(sys.stdout),
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(log_level),
        **initial_values,
    )
