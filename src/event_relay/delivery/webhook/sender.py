"""
HTTP-отправка webhook.

Назначение:
- одна попытка POST пейлоада на WEBHOOK_URL
- классификация неуспеха: транспорт/таймаут/5xx (ретраим) vs 4xx (не ретраим)

Важно:
- не логировать тело пейлоада, только метаданные (id, event, статус)
- keep-alive через requests.Session
"""

from __future__ import annotations

import json
from typing import Any

import requests

from event_relay.common.config import Settings, get_settings
from event_relay.common.errors import (
    DeliveryError,
    ErrCode,
    delivery_error_for_status,
    to_app_error,
)
from event_relay.common.logging import get_project_logger
from event_relay.contracts.events import WebhookPayload
from event_relay.delivery.base import DeliveryResult, PayloadSender

log = get_project_logger()


class HttpWebhookSender(PayloadSender):
    def __init__(
        self,
        settings: Settings | None = None,
        *,
        session: Any | None = None,
    ) -> None:
        self.s = settings or get_settings()
        self._session = session or requests.Session()

    def send(self, payload: WebhookPayload) -> DeliveryResult:
        url = (self.s.webhook_url or "").strip()
        if not url:
            raise DeliveryError(ErrCode.VALIDATION, "WEBHOOK_URL не задан")

        headers = {
            "Content-Type": "application/json",
            "User-Agent": self.s.webhook_user_agent,
            "X-Webhook-ID": payload.id,
        }
        body = json.dumps(payload.to_dict(), ensure_ascii=False, default=str).encode("utf-8")

        try:
            resp = self._session.post(
                url, data=body, headers=headers, timeout=self.s.webhook_timeout_sec
            )
        except requests.RequestException as e:
            err = to_app_error(e)
            raise DeliveryError(err.code, err.message, err.details) from e

        status = int(resp.status_code)
        if not 200 <= status < 300:
            raise delivery_error_for_status(status, getattr(resp, "reason", "") or "")

        log.debug(
            "webhook_sent",
            extra={"payload": {"id": payload.id, "event": payload.event, "status": status}},
        )
        return DeliveryResult(ok=True, provider="http", status_code=status)

    def close(self) -> None:
        close = getattr(self._session, "close", None)
        if callable(close):
            close()
