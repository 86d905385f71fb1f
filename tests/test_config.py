"""Tests for ecostream.config."""

from __future__ import annotations

import json
import stat

import pytest

from ecostream._constants import API_BASE
from ecostream.config import Settings


class TestLoad:
    def test_from_file(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text(json.dumps({"access_key": "AK", "secret_key": "SK", "email": "e"}))

        settings = Settings.load(path, environ={})

        assert settings.access_key == "AK"
        assert settings.secret_key == "SK"
        assert settings.email == "e"
        assert settings.api_base == API_BASE
        assert settings.has_api_keys
        assert not settings.has_login

    def test_environment_overrides_file(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text(json.dumps({"access_key": "AK", "secret_key": "SK"}))
        environ = {"ECOFLOW_ACCESS_KEY": "ENV_AK", "ECOFLOW_API_URL": "https://api-e.ecoflow.com"}

        settings = Settings.load(path, environ=environ)

        assert settings.access_key == "ENV_AK"
        assert settings.secret_key == "SK"
        assert settings.api_base == "https://api-e.ecoflow.com"

    def test_environment_only(self, tmp_path):
        environ = {
            "ECOFLOW_ACCESS_KEY": "AK",
            "ECOFLOW_SECRET_KEY": "SK",
            "ECOFLOW_EMAIL": "me@example.com",
            "ECOFLOW_PASSWORD": "pw",
        }
        settings = Settings.load(tmp_path / "missing.json", environ=environ)
        assert settings.has_login

    def test_unknown_keys_ignored(self, tmp_path):
        path = tmp_path / "credentials.json"
        path.write_text(json.dumps({"access_key": "AK", "secret_key": "SK", "legacy": 1}))
        assert Settings.load(path, environ={}).access_key == "AK"

    def test_missing_keys(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="ecostream configure"):
            Settings.load(tmp_path / "missing.json", environ={})


class TestSave:
    def test_round_trip_and_permissions(self, tmp_path):
        path = tmp_path / "nested" / "credentials.json"
        Settings(access_key="AK", secret_key="SK", password="pw").save(path)

        assert stat.S_IMODE(path.stat().st_mode) == 0o600
        loaded = Settings.load(path, environ={})
        assert loaded.password == "pw"
        assert loaded.refresh_interval == 300.0
