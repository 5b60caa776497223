"""
Кэш загруженных вложений.

Назначение:
- ключ = детерминированная функция события (source_ref + timestamp)
- атомарная запись файла (tmp + rename)
- ограничение размера индекса: вытесняется самая ранняя вставка
- индекс сохраняется в media_cache.json после каждой вставки

Важно:
- вытеснение по порядку вставки, не по порядку обращений
- ошибки записи индекса логируются и не пробрасываются
- невозможность создать каталоги на старте фатальна
"""

from __future__ import annotations

import os
import threading
from collections import OrderedDict
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from event_relay.common.config import MEDIA_TYPES, Settings, get_settings
from event_relay.common.errors import ErrCode, MediaError
from event_relay.common.ids import sanitize_token
from event_relay.common.logging import get_project_logger
from event_relay.common.metrics import MEDIA_CACHE_ENTRIES
from event_relay.common.time import utc_now_iso
from event_relay.domain.enums import MediaType
from event_relay.storage.files import atomic_write_bytes, atomic_write_json, ensure_dir, read_json

log = get_project_logger()

INDEX_FILENAME = "media_cache.json"

MIME_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/bmp": ".bmp",
    "video/mp4": ".mp4",
    "video/webm": ".webm",
    "video/avi": ".avi",
    "video/mov": ".mov",
    "audio/mpeg": ".mp3",
    "audio/ogg": ".ogg",
    "audio/wav": ".wav",
    "audio/m4a": ".m4a",
    "audio/aac": ".aac",
    "audio/flac": ".flac",
    "application/pdf": ".pdf",
    "application/msword": ".doc",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": ".docx",
    "application/vnd.ms-excel": ".xls",
    "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet": ".xlsx",
    "application/vnd.ms-powerpoint": ".ppt",
    "application/vnd.openxmlformats-officedocument.presentationml.presentation": ".pptx",
    "text/plain": ".txt",
    "application/zip": ".zip",
    "application/x-rar-compressed": ".rar",
}


@dataclass
class CacheEntry:
    key: str
    path: str
    media_type: str
    mime_type: str
    size_bytes: int
    downloaded_at: str
    filename: str = ""
    source_ref: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> CacheEntry:
        return cls(
            key=str(raw["key"]),
            path=str(raw["path"]),
            media_type=str(raw["media_type"]),
            mime_type=str(raw.get("mime_type") or ""),
            size_bytes=int(raw.get("size_bytes") or 0),
            downloaded_at=str(raw.get("downloaded_at") or ""),
            filename=str(raw.get("filename") or ""),
            source_ref=str(raw.get("source_ref") or ""),
        )


# =============================================================================
# ПРОИЗВОДНЫЕ ЗНАЧЕНИЯ
# =============================================================================
def cache_key(source_ref: str, timestamp: float) -> str:
    ts = int(timestamp) if float(timestamp).is_integer() else timestamp
    return f"{source_ref}_{ts}"


def media_type_for_mime(mime_type: str | None) -> str | None:
    """
    Тип медиа по MIME. Стикер и голос проверяются раньше общих префиксов.
    """
    if not mime_type:
        return None
    mime = mime_type.split(";", 1)[0].strip().lower()
    if mime == "image/webp":
        return MediaType.sticker.value
    if "ogg" in mime or "opus" in mime:
        return MediaType.voice.value
    if mime.startswith("image/"):
        return MediaType.image.value
    if mime.startswith("video/"):
        return MediaType.video.value
    if mime.startswith("audio/"):
        return MediaType.audio.value
    return MediaType.document.value


def extension_for(mime_type: str | None, filename: str | None = None) -> str:
    if filename and "." in filename:
        ext = os.path.splitext(filename)[1]
        if ext:
            return ext
    mime = (mime_type or "").split(";", 1)[0].strip().lower()
    return MIME_EXTENSIONS.get(mime, ".bin")


def filename_for(source_ref: str, timestamp: float, extension: str) -> str:
    dt = datetime.fromtimestamp(timestamp, UTC)
    stamp = dt.strftime("%Y-%m-%dT%H-%M-%S") + f"-{dt.microsecond // 1000:03d}Z"
    return f"{stamp}_{sanitize_token(source_ref)}{extension}"


class ContentCache:
    def __init__(self, settings: Settings | None = None) -> None:
        self.s = settings or get_settings()
        self.cache_dir = Path(self.s.cache_dir)
        self.download_dir = Path(self.s.download_dir)
        self.index_path = self.cache_dir / INDEX_FILENAME
        self.max_size = self.s.max_cache_size

        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()
        self._lock = threading.RLock()
        self._initialized = False

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def initialize(self) -> None:
        """
        Создать каталоги и подтянуть индекс. OSError здесь фатален.
        """
        dirs = [self.download_dir, self.cache_dir]
        if self.s.organize_by_type:
            dirs.extend(self.download_dir / t for t in MEDIA_TYPES if t in self.s.enabled_media_types)
        for d in dirs:
            try:
                ensure_dir(d)
            except OSError as e:
                log.error(
                    "media_cache_dir_failed",
                    extra={"payload": {"dir": str(d), "error": str(e)[:200]}},
                )
                raise
        self.load()
        self._initialized = True
        log.info(
            "media_cache_ready",
            extra={"payload": {"entries": len(self), "max_cache_size": self.max_size}},
        )

    # -------------------------------------------------------------------------
    # Чтение
    # -------------------------------------------------------------------------
    def resolve(self, key: str) -> CacheEntry | None:
        with self._lock:
            return self._entries.get(key)

    def entries(self) -> list[CacheEntry]:
        with self._lock:
            return list(self._entries.values())

    def validate(self, size_bytes: int, media_type: str | None) -> str:
        if not media_type or media_type not in self.s.enabled_media_types:
            raise MediaError(
                ErrCode.MEDIA_TYPE_DISABLED,
                f"Media type {media_type} not enabled for download",
                {"media_type": media_type},
            )
        if size_bytes > self.s.max_file_size:
            raise MediaError(
                ErrCode.MEDIA_TOO_LARGE,
                f"Media file too large: {size_bytes} bytes (max: {self.s.max_file_size})",
                {"size_bytes": size_bytes, "max_file_size": self.s.max_file_size},
            )
        return media_type

    # -------------------------------------------------------------------------
    # Запись
    # -------------------------------------------------------------------------
    def store(
        self,
        key: str,
        data: bytes,
        *,
        mime_type: str,
        source_ref: str,
        timestamp: float,
        filename: str | None = None,
    ) -> CacheEntry:
        media_type = self.validate(len(data), media_type_for_mime(mime_type))

        name = filename_for(source_ref, timestamp, extension_for(mime_type, filename))
        target_dir = self.download_dir / media_type if self.s.organize_by_type else self.download_dir
        try:
            path = atomic_write_bytes(target_dir / name, data)
        except OSError as e:
            raise MediaError(
                ErrCode.STORAGE_ERROR, f"Failed to write media file: {str(e)[:200]}", {"path": name}
            ) from e

        entry = CacheEntry(
            key=key,
            path=str(path),
            media_type=media_type,
            mime_type=mime_type,
            size_bytes=len(data),
            downloaded_at=utc_now_iso(),
            filename=name,
            source_ref=source_ref,
        )

        with self._lock:
            self._entries.pop(key, None)
            self._entries[key] = entry
            evicted = self._evict_locked()
            MEDIA_CACHE_ENTRIES.set(len(self._entries))
            self._persist_locked()

        for old in evicted:
            self._remove_file(old)

        log.info(
            "media_cached",
            extra={
                "payload": {
                    "key": key,
                    "media_type": media_type,
                    "size_bytes": entry.size_bytes,
                    "evicted": len(evicted),
                }
            },
        )
        return entry

    def _evict_locked(self) -> list[CacheEntry]:
        evicted: list[CacheEntry] = []
        if self.max_size <= 0:
            return evicted
        while len(self._entries) > self.max_size:
            _, old = self._entries.popitem(last=False)
            evicted.append(old)
        return evicted

    def _remove_file(self, entry: CacheEntry) -> None:
        try:
            Path(entry.path).unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            log.warning(
                "media_evict_unlink_failed",
                extra={"payload": {"path": entry.path, "error": str(e)[:200]}},
            )

    # -------------------------------------------------------------------------
    # Индекс
    # -------------------------------------------------------------------------
    def load(self) -> int:
        """
        Подтянуть индекс из файла. Нет файла / битый файл -> пустой кэш.
        """
        if not self.s.cache_enabled:
            return 0
        raw = read_json(self.index_path)
        loaded: OrderedDict[str, CacheEntry] = OrderedDict()
        if isinstance(raw, dict):
            for key, item in raw.items():
                try:
                    loaded[str(key)] = CacheEntry.from_dict({**item, "key": key})
                except (KeyError, TypeError, ValueError):
                    log.warning("media_cache_entry_skipped", extra={"payload": {"key": str(key)}})
        elif raw is not None:
            log.warning("media_cache_index_invalid", extra={"payload": {"path": str(self.index_path)}})

        with self._lock:
            self._entries = loaded
            self._evict_locked()
            MEDIA_CACHE_ENTRIES.set(len(self._entries))
        log.info("media_cache_loaded", extra={"payload": {"entries": len(loaded)}})
        return len(self)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            MEDIA_CACHE_ENTRIES.set(0)
            self._persist_locked()
        log.info("media_cache_cleared")

    def _persist_locked(self) -> None:
        if not self.s.cache_enabled:
            return
        try:
            atomic_write_json(self.index_path, {k: e.to_dict() for k, e in self._entries.items()})
        except OSError as e:
            log.error(
                "media_cache_save_failed",
                extra={"payload": {"path": str(self.index_path), "error": str(e)[:200]}},
            )

    def get_stats(self) -> dict[str, Any]:
        with self._lock:
            entries = list(self._entries.values())
        by_type: dict[str, int] = {}
        for e in entries:
            by_type[e.media_type] = by_type.get(e.media_type, 0) + 1
        return {
            "cache_size": len(entries),
            "max_cache_size": self.max_size,
            "total_bytes": sum(e.size_bytes for e in entries),
            "by_type": by_type,
            "cache_enabled": self.s.cache_enabled,
            "download_enabled": self.s.download_enabled,
            "is_initialized": self._initialized,
        }
