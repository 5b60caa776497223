"""
Централизованная конфигурация relay-ядра (ENV / .env).

Важно:
- настройки читаются из .env и переменных окружения
- типизированные значения через pydantic-settings
- валидация выполняется один раз при создании Settings
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MEDIA_TYPES = ("image", "video", "audio", "document", "sticker", "voice")

DEFAULT_WEBHOOK_EVENTS = (
    "ready,disconnected,change_state,message,message_create,"
    "incoming_call,outgoing_call,call_ended,call_rejected,"
    "poll_created,poll_vote,live_location_start,live_location_update,live_location_stop,"
    "media_queued,media_processing,media_downloaded,media_retry,media_failed"
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # -------------------------------------------------------------------------
    # Runtime
    # -------------------------------------------------------------------------
    app_env: str = Field(default="dev", alias="APP_ENV")
    service_name: str = Field(default="event-relay", alias="SERVICE_NAME")
    status_api_host: str = Field(default="127.0.0.1", alias="STATUS_API_HOST")
    status_api_port: int = Field(default=3002, alias="STATUS_API_PORT")
    cors_allowed_origins: str = Field(default="*", alias="CORS_ALLOWED_ORIGINS")
    event_source_provider: str = Field(default="mock", alias="EVENT_SOURCE_PROVIDER")  # mock

    # -------------------------------------------------------------------------
    # Media cache
    # -------------------------------------------------------------------------
    cache_enabled: bool = Field(default=True, alias="MEDIA_CACHE_ENABLED")
    cache_dir: str = Field(default="./data/media_cache", alias="MEDIA_CACHE_DIR")
    download_dir: str = Field(default="./data/downloads", alias="MEDIA_DOWNLOAD_DIR")
    organize_by_type: bool = Field(default=True, alias="MEDIA_ORGANIZE_BY_TYPE")
    max_cache_size: int = Field(default=1000, alias="MEDIA_MAX_CACHE_SIZE")
    max_file_size: int = Field(default=50 * 1024 * 1024, alias="MEDIA_MAX_FILE_SIZE")
    media_download_types: str = Field(
        default=",".join(MEDIA_TYPES), alias="MEDIA_DOWNLOAD_TYPES"
    )  # csv из image|video|audio|document|sticker|voice

    # -------------------------------------------------------------------------
    # Media download queue
    # -------------------------------------------------------------------------
    download_enabled: bool = Field(default=True, alias="MEDIA_DOWNLOAD_ENABLED")
    download_concurrency: int = Field(default=3, alias="MEDIA_DOWNLOAD_CONCURRENCY")
    download_interval_ms: int = Field(default=1000, alias="MEDIA_DOWNLOAD_INTERVAL_MS")
    download_interval_cap: int = Field(default=2, alias="MEDIA_DOWNLOAD_INTERVAL_CAP")
    max_retries: int = Field(default=3, alias="MEDIA_MAX_RETRIES")
    retry_delay_ms: int = Field(default=2000, alias="MEDIA_RETRY_DELAY_MS")
    download_history_size: int = Field(default=1000, alias="MEDIA_DOWNLOAD_HISTORY_SIZE")
    download_drain_timeout_sec: float = Field(default=30.0, alias="MEDIA_DRAIN_TIMEOUT_SEC")

    # -------------------------------------------------------------------------
    # Webhook delivery
    # -------------------------------------------------------------------------
    webhook_enabled: bool = Field(default=False, alias="WEBHOOK_ENABLED")
    webhook_url: str | None = Field(default=None, alias="WEBHOOK_URL")
    webhook_events: str = Field(default=DEFAULT_WEBHOOK_EVENTS, alias="WEBHOOK_EVENTS")
    webhook_retry_attempts: int = Field(default=3, alias="WEBHOOK_RETRY_ATTEMPTS")
    webhook_retry_delay_ms: int = Field(default=1000, alias="WEBHOOK_RETRY_DELAY_MS")
    webhook_timeout_sec: float = Field(default=10.0, alias="WEBHOOK_TIMEOUT_SEC")
    webhook_user_agent: str = Field(default="event-relay/0.1", alias="WEBHOOK_USER_AGENT")
    dead_letter_file: str = Field(
        default="./data/logs/failed_webhooks.jsonl", alias="WEBHOOK_DEAD_LETTER_FILE"
    )

    # -------------------------------------------------------------------------
    # State / locations
    # -------------------------------------------------------------------------
    state_file: str = Field(default="./data/logs/application_state.json", alias="STATE_FILE")
    save_location_data: bool = Field(default=True, alias="LOCATIONS_SAVE_DATA")
    location_data_dir: str = Field(default="./data/location_data", alias="LOCATIONS_DATA_DIR")

    # -------------------------------------------------------------------------
    # Logging
    # -------------------------------------------------------------------------
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_format: str = Field(default="json", alias="LOG_FORMAT")  # json|text

    @model_validator(mode="before")
    @classmethod
    def _file_overrides(cls, data: Any) -> Any:
        # значения из <ALIAS>_FILE проходят ту же валидацию, что и ENV
        if not isinstance(data, dict):
            return data
        return _apply_file_overrides(cls, data)

    @field_validator(
        "max_cache_size",
        "max_file_size",
        "download_interval_ms",
        "download_interval_cap",
        "max_retries",
        "retry_delay_ms",
        "download_history_size",
        "webhook_retry_attempts",
        "webhook_retry_delay_ms",
    )
    @classmethod
    def _non_negative(cls, value: int) -> int:
        if value < 0:
            raise ValueError("must be a non-negative integer")
        return value

    @field_validator("download_concurrency")
    @classmethod
    def _positive_concurrency(cls, value: int) -> int:
        if value < 1:
            raise ValueError("MEDIA_DOWNLOAD_CONCURRENCY must be >= 1")
        return value

    @field_validator("media_download_types")
    @classmethod
    def _known_media_types(cls, value: str) -> str:
        unknown = [t for t in _split_csv(value) if t not in MEDIA_TYPES]
        if unknown:
            raise ValueError(f"unknown media types: {', '.join(unknown)}")
        return value

    @model_validator(mode="after")
    def _webhook_url_required(self) -> Settings:
        if self.webhook_enabled:
            url = (self.webhook_url or "").strip()
            if not url:
                raise ValueError("WEBHOOK_URL is required when WEBHOOK_ENABLED=true")
            if not url.startswith(("http://", "https://")):
                raise ValueError("WEBHOOK_URL must be an http(s) URL")
        return self

    # -------------------------------------------------------------------------
    # Производные значения
    # -------------------------------------------------------------------------
    @property
    def webhook_event_list(self) -> list[str]:
        return _split_csv(self.webhook_events)

    @property
    def enabled_media_types(self) -> set[str]:
        return set(_split_csv(self.media_download_types))


def _split_csv(raw: str | None) -> list[str]:
    return [p.strip() for p in (raw or "").split(",") if p.strip()]


_CSV_ENV_FIELDS = {"WEBHOOK_EVENTS", "MEDIA_DOWNLOAD_TYPES", "CORS_ALLOWED_ORIGINS"}


def _normalize_file_value(env_key: str, raw: str) -> str:
    value = (raw or "").strip()
    if env_key in _CSV_ENV_FIELDS and "\n" in value and "," not in value:
        parts = [p.strip() for p in value.splitlines() if p.strip()]
        return ",".join(parts)
    return value


def _apply_file_overrides(model: type[BaseSettings], data: dict[str, Any]) -> dict[str, Any]:
    """
    Подмешать значения из файлов <ALIAS>_FILE во входные данные модели.
    Файл перекрывает и ENV, и явные аргументы.
    """
    alias_to_field: dict[str, str] = {}
    field_to_alias: dict[str, str] = {}
    for name, field in model.model_fields.items():
        alias = str(field.alias or name)
        alias_to_field[alias] = name
        alias_to_field[str(name)] = name
        field_to_alias[name] = alias

    merged = dict(data)

    for key, path in os.environ.items():
        if not key.endswith("_FILE") or key in alias_to_field:
            continue
        base = key[: -len("_FILE")]
        target = alias_to_field.get(base)
        if not target:
            continue
        file_path = (path or "").strip()
        if not file_path:
            continue
        try:
            raw = Path(file_path).read_text(encoding="utf-8")
        except Exception as e:
            logging.getLogger("event-relay").error(
                "config_file_read_failed",
                extra={"payload": {"env_key": key, "path": file_path, "error": str(e)[:200]}},
            )
            raise RuntimeError(f"Failed to read {key} from {file_path}") from e
        merged.pop(target, None)
        merged[field_to_alias[target]] = _normalize_file_value(base, raw)
    return merged


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings()
    return _SETTINGS
