from __future__ import annotations

import socket

import pytest
import requests

from event_relay.common.errors import (
    ErrCode,
    MediaError,
    ValidationError,
    delivery_error_for_status,
    to_app_error,
)
from event_relay.queue.retry import backoff_delay_sec, is_retryable


@pytest.mark.parametrize(
    "error",
    [
        ConnectionResetError("reset by peer"),
        ConnectionRefusedError("refused"),
        TimeoutError("timed out"),
        socket.gaierror("name resolution failed"),
        requests.ConnectionError("boom"),
        requests.Timeout("slow"),
        delivery_error_for_status(500, "Internal Server Error"),
        delivery_error_for_status(503),
        RuntimeError("something unexpected"),
    ],
)
def test_transient_errors_are_retryable(error) -> None:
    assert is_retryable(error) is True


@pytest.mark.parametrize(
    "error",
    [
        delivery_error_for_status(400),
        delivery_error_for_status(404, "Not Found"),
        delivery_error_for_status(422),
        MediaError(ErrCode.MEDIA_TOO_LARGE, "too large"),
        MediaError(ErrCode.MEDIA_TYPE_DISABLED, "disabled"),
        MediaError(ErrCode.MEDIA_NOT_FOUND, "missing"),
        ValidationError("bad input"),
    ],
)
def test_terminal_errors_are_not_retryable(error) -> None:
    assert is_retryable(error) is False


def test_to_app_error_classifies_foreign_exceptions() -> None:
    assert to_app_error(socket.gaierror("x")).code == ErrCode.DNS_ERROR
    assert to_app_error(TimeoutError("x")).code == ErrCode.TIMEOUT
    assert to_app_error(ConnectionResetError("x")).code == ErrCode.TRANSPORT_ERROR
    assert to_app_error(requests.Timeout("x")).code == ErrCode.TIMEOUT
    assert to_app_error(PermissionError("x")).code == ErrCode.STORAGE_ERROR
    assert to_app_error(KeyError("x")).code == ErrCode.UNKNOWN


def test_http_error_dict_carries_status_code() -> None:
    err = delivery_error_for_status(404, "Not Found")
    assert err.code == ErrCode.HTTP_CLIENT_ERROR
    assert err.to_dict() == {
        "message": "Webhook request failed: 404 Not Found",
        "kind": "http_client_error",
        "code": 404,
    }
    assert delivery_error_for_status(302).code == ErrCode.HTTP_UNEXPECTED_STATUS


def test_backoff_is_exponential() -> None:
    assert backoff_delay_sec(1000, 0) == 0.0
    assert backoff_delay_sec(1000, 1) == 1.0
    assert backoff_delay_sec(1000, 2) == 2.0
    assert backoff_delay_sec(1000, 3) == 4.0
    assert backoff_delay_sec(250, 4) == 2.0
