"""
Файловые примитивы для durable-хранилищ.

Назначение:
- атомарная запись (tmp + rename) для кэша и снапшотов
- чтение JSON/JSONL с толерантностью к битым данным
- append-only JSONL (dead-letter лог, лог геопозиций)
"""

from __future__ import annotations

import json
import os
import secrets
from pathlib import Path
from typing import Any


def ensure_dir(path: str | Path) -> Path:
    p = Path(path).resolve()
    p.mkdir(parents=True, exist_ok=True)
    return p


def atomic_write_bytes(path: str | Path, data: bytes) -> Path:
    """
    Записать bytes во временный файл рядом и переименовать на место.
    Временное имя уникально, параллельные записи не затирают tmp друг друга.
    """
    dst = Path(path)
    dst.parent.mkdir(parents=True, exist_ok=True)
    tmp = dst.with_name(f"{dst.name}.{secrets.token_hex(4)}.tmp")
    try:
        with tmp.open("wb") as fh:
            fh.write(data)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, dst)
    except Exception:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass
        raise
    return dst


def atomic_write_json(path: str | Path, payload: Any) -> Path:
    raw = json.dumps(payload, ensure_ascii=False, indent=2)
    return atomic_write_bytes(path, raw.encode("utf-8"))


def read_json(path: str | Path) -> Any | None:
    """
    Прочитать JSON-файл. None, если файла нет или он битый.
    """
    p = Path(path)
    try:
        raw = p.read_bytes()
    except FileNotFoundError:
        return None
    try:
        return json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None


def append_jsonl(path: str | Path, record: dict[str, Any]) -> Path:
    dst = Path(path)
    dst.parent.mkdir(parents=True, exist_ok=True)
    line = json.dumps(record, ensure_ascii=False)
    with dst.open("a", encoding="utf-8") as fh:
        fh.write(line + "\n")
    return dst


def write_jsonl(path: str | Path, records: list[dict[str, Any]]) -> Path:
    """Переписать JSONL целиком (атомарно)."""
    content = "".join(json.dumps(r, ensure_ascii=False) + "\n" for r in records)
    return atomic_write_bytes(path, content.encode("utf-8"))


def read_jsonl(path: str | Path) -> tuple[list[dict[str, Any]], int]:
    """
    Прочитать JSONL. Возвращает (записи, количество пропущенных битых строк).
    Строки декодируются по одной: не-UTF-8 строка считается битой.
    """
    p = Path(path)
    try:
        lines = p.read_bytes().splitlines()
    except FileNotFoundError:
        return [], 0

    records: list[dict[str, Any]] = []
    skipped = 0
    for line in lines:
        if not line.strip():
            continue
        try:
            item = json.loads(line.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError):
            skipped += 1
            continue
        if isinstance(item, dict):
            records.append(item)
        else:
            skipped += 1
    return records, skipped
