"""クライアント設定 (pydantic BaseModel) と YAML 読み込み"""

from __future__ import annotations

from collections.abc import Mapping
from enum import StrEnum
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .exceptions import ConfidenceError, ConfidenceErrorCodes


class Region(StrEnum):
    """Confidence API のリージョン。"""

    GLOBAL = "global"
    EU = "eu"
    US = "us"

    @classmethod
    def _missing_(cls, value: object) -> Region | None:
        if isinstance(value, str):
            for member in cls:
                if member.value == value.lower():
                    return member
        return None


_RESOLVER_URLS: dict[Region, str] = {
    Region.GLOBAL: "https://resolver.confidence.dev",
    Region.EU: "https://resolver.eu.confidence.dev",
    Region.US: "https://resolver.us.confidence.dev",
}

_EVENT_URLS: dict[Region, str] = {
    Region.GLOBAL: "https://events.confidence.dev",
    Region.EU: "https://events.eu.confidence.dev",
    Region.US: "https://events.us.confidence.dev",
}


def resolver_url(region: Region) -> str:
    return _RESOLVER_URLS[region]


def event_url(region: Region) -> str:
    return _EVENT_URLS[region]


class ConfidenceOptions(BaseModel):
    """Confidence クライアント設定。

    resolve_url / event_url を省略した場合は region から決まる。
    """

    model_config = {"frozen": True}

    client_secret: str = Field(min_length=1)
    region: Region = Region.GLOBAL
    resolve_url: str = ""
    event_url: str = ""
    timeout_seconds: int = Field(default=10, gt=0)
    max_retries: int = Field(default=3, ge=0)
    retry_backoff_seconds: float = Field(default=0.5, ge=0.0)
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    log_format: Literal["json", "text"] = "json"

    @field_validator("client_secret")
    @classmethod
    def _secret_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("client_secret is required")
        return value

    @field_validator("region", mode="before")
    @classmethod
    def _lower_region(cls, value: Any) -> Any:
        return value.lower() if isinstance(value, str) else value

    @field_validator("log_level", mode="before")
    @classmethod
    def _upper_level(cls, value: Any) -> Any:
        return value.upper() if isinstance(value, str) else value

    @model_validator(mode="after")
    def _fill_region_urls(self) -> ConfidenceOptions:
        if not self.resolve_url:
            object.__setattr__(self, "resolve_url", resolver_url(self.region))
        if not self.event_url:
            object.__setattr__(self, "event_url", event_url(self.region))
        return self


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> dict[str, Any]:
    """ベース設定に環境別設定を重ねた新しい辞書を返す。

    両側が辞書のキーだけ再帰的に結合する。それ以外 (リストを含む) は override の値になる。
    """
    merged: dict[str, Any] = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            value = deep_merge(current, value)
        merged[key] = value
    return merged


def _read_yaml(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfidenceError(
            code=ConfidenceErrorCodes.CONFIG_ERROR,
            message=f"Failed to read config file: {path}",
            cause=e,
        ) from e
    try:
        data = yaml.safe_load(text) or {}
    except yaml.YAMLError as e:
        raise ConfidenceError(
            code=ConfidenceErrorCodes.CONFIG_ERROR,
            message=f"Failed to parse YAML: {path}",
            cause=e,
        ) from e
    if not isinstance(data, dict):
        raise ConfidenceError(
            code=ConfidenceErrorCodes.CONFIG_ERROR,
            message=f"Config root must be a mapping: {path}",
        )
    return data


def build_options(data: dict[str, Any]) -> ConfidenceOptions:
    """辞書から ConfidenceOptions を検証して生成する。"""
    try:
        return ConfidenceOptions.model_validate(data)
    except ValidationError as e:
        raise ConfidenceError(
            code=ConfidenceErrorCodes.CONFIG_ERROR,
            message=f"Config validation failed: {e}",
            cause=e,
        ) from e


def load_options(base_path: Path, env_path: Path | None = None) -> ConfidenceOptions:
    """設定ファイルを読み込んで ConfidenceOptions を返す。

    base_path: ベース設定ファイルパス（必須）
    env_path: 環境別設定ファイルパス（オプション）。存在する場合はベースにマージ。
    ``confidence:`` セクションがあればその中身を使う。
    """
    data = _read_yaml(base_path)
    if env_path is not None and env_path.exists():
        data = deep_merge(data, _read_yaml(env_path))
    section = data.get("confidence", data)
    if not isinstance(section, dict):
        raise ConfidenceError(
            code=ConfidenceErrorCodes.CONFIG_ERROR,
            message="'confidence' section must be a mapping",
        )
    return build_options(section)
