from __future__ import annotations

from datetime import timedelta

import pytest

from eventboard import config


def test_defaults_apply_without_file_or_env(monkeypatch, tmp_path):
    monkeypatch.setenv("EVENTBOARD_BASE_DIR", str(tmp_path))
    for name in ("EVENTBOARD_CONFIG", "EVENTBOARD_DATA_DIR", "EVENTBOARD_DB"):
        monkeypatch.delenv(name, raising=False)
    for key in config.DEFAULTS:
        monkeypatch.delenv(f"EVENTBOARD_{key.upper()}", raising=False)

    loaded = config.load_settings()

    assert loaded.namespace == "default"
    assert loaded.carousel_interval_seconds == 5
    assert loaded.imminent_window == timedelta(hours=48)
    assert loaded.live_rsvp_refresh is True
    assert loaded.database_path == tmp_path / "data" / "eventboard.db"


def test_env_overrides_toml(monkeypatch, tmp_path):
    config_path = tmp_path / "eventboard.toml"
    config.write_config_file(
        {"namespace": "club", "imminent_window_hours": 24, "live_rsvp_refresh": True},
        path=config_path,
    )
    monkeypatch.setenv("EVENTBOARD_BASE_DIR", str(tmp_path))
    monkeypatch.setenv("EVENTBOARD_LIVE_RSVP_REFRESH", "off")
    monkeypatch.setenv("EVENTBOARD_ADMIN_PIN", "9876")
    monkeypatch.delenv("EVENTBOARD_NAMESPACE", raising=False)
    monkeypatch.delenv("EVENTBOARD_IMMINENT_WINDOW_HOURS", raising=False)

    loaded = config.load_settings(config_path)

    assert loaded.namespace == "club"
    assert loaded.imminent_window_hours == 24
    assert loaded.live_rsvp_refresh is False
    assert loaded.admin_pin == "9876"
    assert config.settings_as_dict(loaded)["namespace"] == "club"


@pytest.mark.parametrize("namespace", ["", "a/b", "/"])
def test_invalid_namespace_is_rejected(monkeypatch, tmp_path, namespace):
    monkeypatch.setenv("EVENTBOARD_BASE_DIR", str(tmp_path))
    monkeypatch.setenv("EVENTBOARD_NAMESPACE", namespace)
    with pytest.raises(ValueError):
        config.load_settings(tmp_path / "missing.toml")


def test_update_config_file_merges_known_keys(monkeypatch, tmp_path):
    config_path = tmp_path / "eventboard.toml"
    config.write_config_file({"namespace": "club"}, path=config_path)
    monkeypatch.setenv("EVENTBOARD_BASE_DIR", str(tmp_path))
    monkeypatch.delenv("EVENTBOARD_RSVP_WATCH_LIMIT", raising=False)
    monkeypatch.delenv("EVENTBOARD_NAMESPACE", raising=False)
    monkeypatch.setattr(config, "settings", config.settings)

    updated = config.update_config_file(
        {"rsvp_watch_limit": "10", "unknown_key": "ignored"}, path=config_path
    )

    assert updated.rsvp_watch_limit == 10
    assert updated.namespace == "club"
    text = config_path.read_text(encoding="utf-8")
    assert "unknown_key" not in text
    assert "rsvp_watch_limit = 10" in text
