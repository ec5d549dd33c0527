"""confidence_flags ライブラリの例外型定義"""

from __future__ import annotations


class ConfidenceError(Exception):
    """confidence_flags ライブラリのエラー基底クラス。"""

    def __init__(
        self,
        code: str,
        message: str,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return f"{self.code}: {super().__str__()}"


class ConfidenceErrorCodes:
    """ConfidenceError のエラーコード定数。"""

    FLAG_NOT_FOUND: str = "FLAG_NOT_FOUND"
    PROPERTY_PATH_NOT_FOUND: str = "PROPERTY_PATH_NOT_FOUND"
    COERCION_FAILURE: str = "COERCION_FAILURE"
    TRANSPORT_FAILURE: str = "TRANSPORT_FAILURE"
    DESERIALIZATION_FAILURE: str = "DESERIALIZATION_FAILURE"
    CANCELLED: str = "CANCELLED"
    PROVIDER_NOT_READY: str = "PROVIDER_NOT_READY"
    PROVIDER_INIT_FAILED: str = "PROVIDER_INIT_FAILED"
    GENERAL_ERROR: str = "GENERAL_ERROR"
    CONFIG_ERROR: str = "CONFIG_ERROR"
