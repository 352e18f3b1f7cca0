"""Tests for tenant (app) configuration loading."""

import json

import pytest

from app.core.config import Settings, load_app_configs, validate_app_configs

VALID_APP = {"app_key": "stripe_live", "name": "Stripe", "connector": "stripe", "config": {}}


def _paths(errors):
    return [e["path"] for e in errors]


def test_valid_list_has_no_errors():
    assert validate_app_configs([VALID_APP]) == []


def test_apps_must_be_a_list():
    assert _paths(validate_app_configs({"app_key": "x"})) == ["apps"]


def test_every_missing_field_reported():
    errors = validate_app_configs([{"app_key": "Bad-Key"}])

    assert _paths(errors) == ["apps[0].app_key", "apps[0].name", "apps[0].connector", "apps[0].config"]


def test_duplicate_app_keys():
    errors = validate_app_configs([VALID_APP, VALID_APP])

    assert errors == [{"path": "apps[1].app_key", "message": "Duplicate app_key: stripe_live"}]


def test_invalid_sync_from():
    errors = validate_app_configs([{**VALID_APP, "sync_from": "last tuesday"}])

    assert _paths(errors) == ["apps[0].sync_from"]


def test_load_from_inline_json():
    source = Settings(apps_json=json.dumps([{**VALID_APP, "sync_from": "2024-01-01T00:00:00Z"}]))

    (app,) = load_app_configs(source)

    assert app.app_key == "stripe_live"
    assert app.sync_from.year == 2024


def test_load_from_file_with_apps_wrapper(tmp_path):
    path = tmp_path / "apps.json"
    path.write_text(json.dumps({"apps": [VALID_APP]}), encoding="utf-8")

    apps = load_app_configs(Settings(apps_config_path=str(path)))

    assert [a.app_key for a in apps] == ["stripe_live"]


def test_invalid_config_aborts_with_every_error():
    source = Settings(apps_json=json.dumps([{"app_key": "x"}]))

    with pytest.raises(ValueError, match="apps\\[0\\].name.*apps\\[0\\].connector"):
        load_app_configs(source)


def test_nothing_configured():
    assert load_app_configs(Settings()) == []


def test_sentry_skipped_without_dsn(monkeypatch):
    from app.core import sentry
    from app.core.config import settings

    monkeypatch.setattr(settings, "sentry_dsn", None)

    assert sentry.init_sentry("worker") is False
