from __future__ import annotations

from pathlib import Path

import pytest

from event_relay.common.config import Settings


@pytest.fixture()
def make_settings(tmp_path: Path):
    """
    Settings с путями внутри tmp_path и без задержек (ретраи/rate limit).
    """

    def _make(**overrides) -> Settings:
        base = {
            "cache_dir": str(tmp_path / "media_cache"),
            "download_dir": str(tmp_path / "downloads"),
            "dead_letter_file": str(tmp_path / "logs" / "failed_webhooks.jsonl"),
            "state_file": str(tmp_path / "logs" / "application_state.json"),
            "location_data_dir": str(tmp_path / "location_data"),
            "download_interval_ms": 0,
            "retry_delay_ms": 0,
            "webhook_retry_delay_ms": 0,
        }
        base.update(overrides)
        return Settings(**base)

    return _make
