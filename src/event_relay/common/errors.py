"""
Единые ошибки и коды ошибок.

Назначение:
- предсказуемые коды для webhook-доставки, загрузки медиа и DLQ
- единый стиль исключений по проекту
- приведение "чужих" исключений (сеть, requests) к AppError
"""

from __future__ import annotations

import socket
from dataclasses import dataclass

import requests


class ErrCode:
    # Общие
    UNKNOWN = "unknown"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"

    # Транспорт
    TRANSPORT_ERROR = "transport_error"
    TIMEOUT = "timeout"
    DNS_ERROR = "dns_error"

    # HTTP-ответы потребителя webhook
    HTTP_CLIENT_ERROR = "http_client_error"
    HTTP_SERVER_ERROR = "http_server_error"
    HTTP_UNEXPECTED_STATUS = "http_unexpected_status"

    # Медиа
    MEDIA_TOO_LARGE = "media_too_large"
    MEDIA_TYPE_DISABLED = "media_type_disabled"
    MEDIA_NOT_FOUND = "media_not_found"

    # Инфра/хранилища
    STORAGE_ERROR = "storage_error"


@dataclass
class AppError(Exception):
    """
    Базовая ошибка приложения.
    - code: стабильный код ошибки (он же "kind" в DLQ)
    - message: безопасное сообщение
    - details: доп. данные (http status и т.п.)
    """

    code: str
    message: str
    details: dict | None = None

    def __str__(self) -> str:  # pragma: no cover
        return f"{self.code}: {self.message}"

    @property
    def status_code(self) -> int | None:
        if not self.details:
            return None
        status = self.details.get("status")
        return int(status) if status is not None else None

    def to_dict(self) -> dict:
        out: dict = {"message": self.message, "kind": self.code}
        if self.status_code is not None:
            out["code"] = self.status_code
        return out


class ValidationError(AppError):
    def __init__(self, message: str = "Ошибка валидации", details: dict | None = None) -> None:
        super().__init__(ErrCode.VALIDATION, message, details)


class DeliveryError(AppError):
    def __init__(self, code: str, message: str, details: dict | None = None) -> None:
        super().__init__(code, message, details)


class MediaError(AppError):
    def __init__(self, code: str, message: str, details: dict | None = None) -> None:
        super().__init__(code, message, details)


def delivery_error_for_status(status: int, reason: str = "") -> DeliveryError:
    """
    Ошибка по HTTP-статусу потребителя: 4xx -> client, 5xx -> server.
    """
    if 400 <= status < 500:
        code = ErrCode.HTTP_CLIENT_ERROR
    elif status >= 500:
        code = ErrCode.HTTP_SERVER_ERROR
    else:
        code = ErrCode.HTTP_UNEXPECTED_STATUS
    message = f"Webhook request failed: {status} {reason}".strip()
    return DeliveryError(code, message, {"status": status})


def to_app_error(exc: BaseException) -> AppError:
    """
    Привести произвольное исключение к AppError с кодом из ErrCode.
    """
    if isinstance(exc, AppError):
        return exc
    message = str(exc)[:200] or exc.__class__.__name__
    details = {"exception": exc.__class__.__name__}

    if isinstance(exc, requests.Timeout):
        return AppError(ErrCode.TIMEOUT, message, details)
    if isinstance(exc, requests.ConnectionError):
        return AppError(ErrCode.TRANSPORT_ERROR, message, details)
    if isinstance(exc, requests.RequestException):
        return AppError(ErrCode.TRANSPORT_ERROR, message, details)
    if isinstance(exc, socket.gaierror):
        return AppError(ErrCode.DNS_ERROR, message, details)
    if isinstance(exc, TimeoutError):
        return AppError(ErrCode.TIMEOUT, message, details)
    if isinstance(exc, ConnectionError):
        return AppError(ErrCode.TRANSPORT_ERROR, message, details)
    if isinstance(exc, OSError):
        return AppError(ErrCode.STORAGE_ERROR, message, details)
    return AppError(ErrCode.UNKNOWN, message, details)
