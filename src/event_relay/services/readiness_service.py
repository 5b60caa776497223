"""
Runtime readiness checks for relay startup.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from event_relay.common.config import Settings, get_settings
from event_relay.common.logging import get_project_logger
from event_relay.storage.files import ensure_dir

log = get_project_logger()


@dataclass
class ReadinessIssue:
    severity: str  # error|warning
    code: str
    message: str


@dataclass
class ReadinessState:
    ready: bool
    issues: list[ReadinessIssue]


def _is_prod_env(app_env: str | None) -> bool:
    env = (app_env or "").strip().lower()
    return env in {"prod", "production"}


def _required_dirs(s: Settings) -> dict[str, Path]:
    return {
        "media_cache_dir": Path(s.cache_dir),
        "media_download_dir": Path(s.download_dir),
        "dead_letter_dir": Path(s.dead_letter_file).parent,
        "state_dir": Path(s.state_file).parent,
        "location_data_dir": Path(s.location_data_dir),
    }


def evaluate_readiness(settings: Settings | None = None) -> ReadinessState:
    s = settings or get_settings()
    issues: list[ReadinessIssue] = []
    is_prod = _is_prod_env(s.app_env)

    for code, path in _required_dirs(s).items():
        if code == "location_data_dir" and not s.save_location_data:
            continue
        try:
            ensure_dir(path)
        except OSError as e:
            issues.append(
                ReadinessIssue(
                    severity="error",
                    code=f"{code}_not_creatable",
                    message=f"Каталог {path} не создаётся: {str(e)[:200]}",
                )
            )

    if not s.webhook_enabled:
        issues.append(
            ReadinessIssue(
                severity="warning",
                code="webhook_disabled",
                message="WEBHOOK_ENABLED=false, уведомления не отправляются",
            )
        )
    elif not s.webhook_event_list:
        issues.append(
            ReadinessIssue(
                severity="warning",
                code="webhook_events_empty",
                message="WEBHOOK_EVENTS пустой, ни одно событие не будет доставлено",
            )
        )

    if not s.download_enabled:
        issues.append(
            ReadinessIssue(
                severity="warning",
                code="media_download_disabled",
                message="MEDIA_DOWNLOAD_ENABLED=false, вложения не загружаются",
            )
        )

    if is_prod:
        if (s.webhook_url or "").strip().lower().startswith("http://"):
            issues.append(
                ReadinessIssue(
                    severity="warning",
                    code="webhook_url_not_https",
                    message="В prod WEBHOOK_URL лучше указывать с https://",
                )
            )
        if "*" in (s.cors_allowed_origins or ""):
            issues.append(
                ReadinessIssue(
                    severity="warning",
                    code="cors_wildcard_in_prod",
                    message="CORS wildcard '*' в prod: status API доступен с любого origin",
                )
            )

    ready = all(i.severity != "error" for i in issues)
    return ReadinessState(ready=ready, issues=issues)


def enforce_startup_readiness(*, service_name: str, settings: Settings | None = None) -> ReadinessState:
    """
    Ошибки готовности фатальны в любом окружении (например, каталог не создаётся).
    """
    s = settings or get_settings()
    state = evaluate_readiness(s)
    errors = [i for i in state.issues if i.severity == "error"]
    warnings = [i for i in state.issues if i.severity == "warning"]

    if errors:
        log.error(
            "startup_readiness_failed",
            extra={
                "payload": {
                    "service": service_name,
                    "app_env": s.app_env,
                    "error_codes": [e.code for e in errors],
                }
            },
        )
        msg = ", ".join(e.code for e in errors)
        raise RuntimeError(f"startup readiness failed for {service_name}: {msg}")

    log.info(
        "startup_readiness_ok",
        extra={
            "payload": {
                "service": service_name,
                "app_env": s.app_env,
                "warning_codes": [w.code for w in warnings],
            }
        },
    )
    return state
