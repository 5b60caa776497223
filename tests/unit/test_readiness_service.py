from __future__ import annotations

import pytest

from event_relay.services.readiness_service import (
    enforce_startup_readiness,
    evaluate_readiness,
)


def test_readiness_dev_defaults_only_warn(make_settings) -> None:
    s = make_settings(app_env="dev")
    state = evaluate_readiness(s)
    codes = {i.code for i in state.issues}

    assert state.ready is True
    assert "webhook_disabled" in codes
    assert all(i.severity == "warning" for i in state.issues)


def test_readiness_prod_warns_on_plain_http_and_cors_wildcard(make_settings) -> None:
    s = make_settings(
        app_env="prod",
        webhook_enabled=True,
        webhook_url="http://consumer.internal/hook",
        cors_allowed_origins="*",
    )
    state = evaluate_readiness(s)
    codes = {i.code for i in state.issues}

    assert state.ready is True
    assert "webhook_url_not_https" in codes
    assert "cors_wildcard_in_prod" in codes
    assert "webhook_disabled" not in codes


def test_readiness_warns_on_empty_event_list_and_disabled_downloads(make_settings) -> None:
    s = make_settings(
        webhook_enabled=True,
        webhook_url="https://consumer.example/hook",
        webhook_events="",
        download_enabled=False,
    )
    codes = {i.code for i in evaluate_readiness(s).issues}
    assert "webhook_events_empty" in codes
    assert "media_download_disabled" in codes


def test_readiness_fails_when_directory_cannot_be_created(tmp_path, make_settings) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("file", encoding="utf-8")
    s = make_settings(app_env="dev", cache_dir=str(blocker / "cache"))

    state = evaluate_readiness(s)
    assert state.ready is False
    assert "media_cache_dir_not_creatable" in {i.code for i in state.issues}

    with pytest.raises(RuntimeError, match="media_cache_dir_not_creatable"):
        enforce_startup_readiness(service_name="relay-driver", settings=s)


def test_location_dir_is_ignored_when_saving_disabled(tmp_path, make_settings) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("file", encoding="utf-8")
    s = make_settings(save_location_data=False, location_data_dir=str(blocker / "loc"))

    state = enforce_startup_readiness(service_name="relay-driver", settings=s)
    assert state.ready is True
