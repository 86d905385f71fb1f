"""Tests for ecostream.auth."""

from __future__ import annotations

import base64
import json
import re

import pytest
from aioresponses import aioresponses

from ecostream import auth
from ecostream._constants import API_BASE, CERTIFICATION_PATH, LOGIN_PATH
from ecostream.errors import AuthError, InvalidResponse, TransportError

_LOGIN_URL = f"{API_BASE}{LOGIN_PATH}"
_CERT_URL = re.compile(rf"^{re.escape(API_BASE + CERTIFICATION_PATH)}")

_LOGIN_OK = {
    "code": "0",
    "message": "Success",
    "data": {"token": "tok-123", "user": {"userId": "1234567890"}},
}

_CERT_OK = {
    "code": "0",
    "message": "Success",
    "data": {
        "url": "mqtt.ecoflow.com",
        "port": "8883",
        "protocol": "mqtts",
        "certificateAccount": "app-abc",
        "certificatePassword": "secret-pw",
    },
}


def _calls(m: aioresponses) -> list:
    return [call for calls in m.requests.values() for call in calls]


class TestLogin:
    async def test_success(self):
        with aioresponses() as m:
            m.post(_LOGIN_URL, payload=_LOGIN_OK)
            session = await auth.login("me@example.com", "hunter2")
            (call,) = _calls(m)

        assert session == auth.LoginSession(token="tok-123", user_id="1234567890")
        body = json.loads(call.kwargs["data"])
        assert body["email"] == "me@example.com"
        assert base64.b64decode(body["password"]) == b"hunter2"
        assert body["scene"] == "IOT_APP"
        assert body["userType"] == "ECOFLOW"
        assert call.kwargs["headers"]["lang"] == "en_US"

    async def test_rejected(self):
        with aioresponses() as m:
            m.post(_LOGIN_URL, payload={"code": "1001", "message": "wrong password"})
            with pytest.raises(AuthError, match="wrong password"):
                await auth.login("me@example.com", "bad")

    async def test_missing_token(self):
        with aioresponses() as m:
            m.post(_LOGIN_URL, payload={"code": "0", "data": {"user": {"userId": "1"}}})
            with pytest.raises(AuthError, match="malformed"):
                await auth.login("me@example.com", "pw")

    async def test_not_json(self):
        with aioresponses() as m:
            m.post(_LOGIN_URL, body="Bad Gateway")
            with pytest.raises(AuthError):
                await auth.login("me@example.com", "pw")

    async def test_http_error(self):
        with aioresponses() as m:
            m.post(_LOGIN_URL, status=503)
            with pytest.raises(TransportError, match="503"):
                await auth.login("me@example.com", "pw")

    def test_token_not_in_repr(self):
        assert "tok" not in repr(auth.LoginSession(token="tok-123", user_id="1"))


class TestFetchBrokerCredentials:
    async def test_success(self):
        with aioresponses() as m:
            m.get(_CERT_URL, payload=_CERT_OK)
            creds = await auth.fetch_broker_credentials("tok-123", "1234567890")
            ((method, url), [call]) = next(iter(m.requests.items()))

        assert method == "GET"
        assert url.query["userId"] == "1234567890"
        assert call.kwargs["headers"]["Authorization"] == "Bearer tok-123"
        assert creds.host == "mqtt.ecoflow.com"
        assert creds.port == 8883
        assert creds.account == "app-abc"
        assert creds.password == "secret-pw"
        assert creds.user_id == "1234567890"
        assert creds.uses_tls

    async def test_user_id_stamped_from_login(self):
        cert = {"code": "0", "data": {**_CERT_OK["data"], "userId": "other"}}
        with aioresponses() as m:
            m.get(_CERT_URL, payload=cert)
            creds = await auth.fetch_broker_credentials("tok", "42")
        assert creds.user_id == "42"

    async def test_rejected(self):
        with aioresponses() as m:
            m.get(_CERT_URL, payload={"code": "401", "message": "token expired"})
            with pytest.raises(AuthError, match="token expired"):
                await auth.fetch_broker_credentials("tok", "42")

    async def test_missing_field(self):
        data = dict(_CERT_OK["data"])
        del data["certificatePassword"]
        with aioresponses() as m:
            m.get(_CERT_URL, payload={"code": "0", "data": data})
            with pytest.raises(InvalidResponse):
                await auth.fetch_broker_credentials("tok", "42")

    async def test_no_data(self):
        with aioresponses() as m:
            m.get(_CERT_URL, payload={"code": "0"})
            with pytest.raises(InvalidResponse):
                await auth.fetch_broker_credentials("tok", "42")

    def test_password_not_in_repr(self):
        creds = auth.BrokerCredentials(account="a", password="secret-pw")
        assert "secret-pw" not in repr(creds)

    def test_plain_protocol(self):
        assert not auth.BrokerCredentials(account="a", password="p", protocol="mqtt").uses_tls

    def test_websocket_protocols(self):
        wss = auth.BrokerCredentials(account="a", password="p", protocol="wss")
        mqtts = auth.BrokerCredentials(account="a", password="p", protocol="mqtts")
        assert wss.uses_websockets
        assert not mqtts.uses_websockets


class TestExchange:
    async def test_login_then_certification(self):
        with aioresponses() as m:
            m.post(_LOGIN_URL, payload=_LOGIN_OK)
            m.get(_CERT_URL, payload=_CERT_OK)
            creds = await auth.exchange("me@example.com", "hunter2")

        assert creds.user_id == "1234567890"
        assert creds.host == "mqtt.ecoflow.com"

    async def test_login_failure_stops_exchange(self):
        with aioresponses() as m:
            m.post(_LOGIN_URL, payload={"code": "1", "message": "nope"})
            with pytest.raises(AuthError):
                await auth.exchange("me@example.com", "pw")
            assert len(_calls(m)) == 1
