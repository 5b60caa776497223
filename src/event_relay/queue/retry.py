"""
Retry-политика очередей.

Назначение:
- единственный предикат "можно ли повторять" для webhook, DLQ и загрузок медиа
- расчёт экспоненциального backoff
"""

from __future__ import annotations

from event_relay.common.errors import ErrCode, to_app_error

NON_RETRYABLE_CODES = frozenset(
    {
        ErrCode.HTTP_CLIENT_ERROR,
        ErrCode.MEDIA_TOO_LARGE,
        ErrCode.MEDIA_TYPE_DISABLED,
        ErrCode.MEDIA_NOT_FOUND,
        ErrCode.VALIDATION,
    }
)


def is_retryable(error: BaseException) -> bool:
    """
    True для транспортных ошибок, таймаутов, 5xx и неизвестных ошибок.
    False для 4xx и терминальных ошибок медиа.
    """
    return to_app_error(error).code not in NON_RETRYABLE_CODES


def backoff_delay_sec(base_delay_ms: int, attempt: int) -> float:
    """
    Задержка перед повтором номер attempt (1, 2, ...): base * 2^(attempt-1).
    """
    if attempt <= 0:
        return 0.0
    return max(0, base_delay_ms) * (2 ** (attempt - 1)) / 1000.0
