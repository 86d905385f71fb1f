"""Tests for ecostream.cli."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

from typer.testing import CliRunner

from ecostream.cli import app
from ecostream.client import Client, CommandResult, Device
from ecostream.config import Settings
from ecostream.decoder import Composite
from ecostream.errors import AuthError, ConnectError, RemoteError
from ecostream.telemetry import TelemetryConnection

runner = CliRunner()

API_SETTINGS = Settings(access_key="AK", secret_key="SK")
FULL_SETTINGS = Settings(access_key="AK", secret_key="SK", email="me@example.com", password="pw")


def _load(settings: Settings = API_SETTINGS) -> Any:
    return patch.object(Settings, "load", return_value=settings)


class TestMain:
    def test_no_command_shows_help(self):
        result = runner.invoke(app, [])
        assert result.exit_code == 0
        assert "set-watts" in result.output

    def test_missing_settings(self):
        with patch.object(Settings, "load", side_effect=FileNotFoundError("No API keys")):
            result = runner.invoke(app, ["devices"])
        assert result.exit_code == 1
        assert "No API keys" in result.output


class TestConfigure:
    def test_saves_settings(self):
        with patch.object(Settings, "save", autospec=True) as save:
            result = runner.invoke(
                app,
                [
                    "configure",
                    "--access-key", "AK",
                    "--secret-key", "SK",
                    "--email", "me@example.com",
                    "--password", "pw",
                ],
            )

        assert result.exit_code == 0
        assert "Settings saved." in result.output
        saved: Settings = save.call_args.args[0]
        assert saved.access_key == "AK"
        assert saved.email == "me@example.com"


class TestDevicesCommand:
    def test_lists_devices(self):
        devices = [
            Device(MagicMock(), {"sn": "SN1", "online": 1}),
            Device(MagicMock(), {"sn": "SN2", "online": 0}),
        ]
        with _load(), patch.object(Client, "list_devices", AsyncMock(return_value=devices)):
            result = runner.invoke(app, ["devices"])

        assert result.exit_code == 0
        assert "  [0] SN1 (online)" in result.output
        assert "  [1] SN2 (offline)" in result.output

    def test_no_devices(self):
        with _load(), patch.object(Client, "list_devices", AsyncMock(return_value=[])):
            result = runner.invoke(app, ["devices"])
        assert result.exit_code == 1
        assert "No devices found." in result.output

    def test_remote_error(self):
        error = RemoteError("1", "bad key", operation="get device list")
        with _load(), patch.object(Client, "list_devices", AsyncMock(side_effect=error)):
            result = runner.invoke(app, ["devices"])
        assert result.exit_code == 1
        assert "error code: 1, error message: bad key" in result.output


class TestGetCommand:
    def test_sorted_output(self):
        params = {"pd.soc": 80, "inv.watts": 120}
        mock = AsyncMock(return_value=params)
        with _load(), patch.object(Client, "get_device_parameters", mock):
            result = runner.invoke(app, ["get", "SN1"])

        assert result.exit_code == 0
        assert result.output.splitlines() == ["  inv.watts: 120", "  pd.soc: 80"]
        mock.assert_awaited_once_with("SN1", "data")

    def test_json_output(self):
        params = {"pd.soc": 80}
        with _load(), patch.object(Client, "get_device_parameters", AsyncMock(return_value=params)):
            result = runner.invoke(app, ["get", "SN1", "--json", "--selector", ""])

        assert result.exit_code == 0
        assert json.loads(result.output) == params


class TestSetWattsCommand:
    def test_success(self):
        mock = AsyncMock(return_value=CommandResult(code="0", message="Success"))
        with _load(), patch.object(Client, "set_permanent_watts", mock):
            result = runner.invoke(app, ["set-watts", "HW51", "200"])

        assert result.exit_code == 0
        assert "Set device parameter to 200 W: Success" in result.output
        mock.assert_awaited_once_with("HW51", 200.0)

    def test_negative_rejected(self):
        mock = AsyncMock()
        with _load(), patch.object(Client, "set_permanent_watts", mock):
            result = runner.invoke(app, ["set-watts", "HW51", "--", "-5"])

        assert result.exit_code == 1
        mock.assert_not_awaited()

    def test_remote_error(self):
        error = RemoteError("1006", "device offline", operation="set device parameter")
        with _load(), patch.object(Client, "set_permanent_watts", AsyncMock(side_effect=error)):
            result = runner.invoke(app, ["set-watts", "HW51", "100"])
        assert result.exit_code == 1
        assert "device offline" in result.output


def _fake_connect(records: list[tuple[str, dict[str, Any]]]) -> Any:
    """Replacement for ``TelemetryConnection.connect`` that delivers *records*."""

    async def connect(self: TelemetryConnection) -> Any:
        for sn, fields in records:
            self.stats.record_broker_message(sn)
            await self._callback(sn, fields)
        subscription = MagicMock()
        subscription.wait = AsyncMock()
        subscription.stop = AsyncMock()
        return subscription

    return connect


class TestWatchCommand:
    def test_requires_login(self):
        with _load(API_SETTINGS):
            result = runner.invoke(app, ["watch"])
        assert result.exit_code == 1
        assert "No account login saved" in result.output

    def test_prints_records_and_report(self):
        records = [
            ("SN1", {"pd.soc": 80, "list": Composite("[1,2]")}),
            ("SN2", {"inv.watts": 5}),
        ]
        with (
            _load(FULL_SETTINGS),
            patch.object(TelemetryConnection, "refresh_devices", AsyncMock(return_value=())),
            patch.object(TelemetryConnection, "connect", _fake_connect(records)),
        ):
            result = runner.invoke(app, ["watch"])

        assert result.exit_code == 0
        assert "SN1 pd.soc: 80" in result.output
        assert "SN1 list: [1,2]" in result.output
        assert "SN2 inv.watts: 5" in result.output
        assert "  SN1 got http=000 mqtt=001 messages" in result.output

    def test_filters_by_serial(self):
        records = [("SN1", {"a": 1}), ("SN2", {"b": 2})]
        with (
            _load(FULL_SETTINGS),
            patch.object(TelemetryConnection, "refresh_devices", AsyncMock(return_value=())),
            patch.object(TelemetryConnection, "connect", _fake_connect(records)),
        ):
            result = runner.invoke(app, ["watch", "SN2"])

        assert result.exit_code == 0
        assert "SN2 b: 2" in result.output
        assert "SN1 a: 1" not in result.output

    def test_connect_error(self):
        error = ConnectError("Unable to connect to the broker: refused")
        error.__cause__ = AuthError("refused")
        with (
            _load(FULL_SETTINGS),
            patch.object(TelemetryConnection, "refresh_devices", AsyncMock(return_value=())),
            patch.object(TelemetryConnection, "connect", AsyncMock(side_effect=error)),
        ):
            result = runner.invoke(app, ["watch"])

        assert result.exit_code == 1
        assert "Unable to connect to the broker" in result.output
