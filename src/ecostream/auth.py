"""Broker credential exchange.

The MQTT broker does not accept the open API keys.  Instead the account
login (email and password) yields a session token, which is exchanged for
short-lived broker credentials.  Fetch fresh credentials for every
connection attempt and never persist them.
"""

from __future__ import annotations

import base64
import json
import logging
from dataclasses import dataclass, field

import aiohttp

from ecostream._constants import (
    API_BASE,
    APP_HEADERS,
    CERTIFICATION_PATH,
    LOGIN_PATH,
    LOGIN_SCENE,
    LOGIN_USER_TYPE,
    SUCCESS_CODE,
)
from ecostream.errors import AuthError, InvalidResponse, TransportError

log = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 15.0


@dataclass(frozen=True)
class LoginSession:
    """Result of the account login."""

    token: str = field(repr=False)
    user_id: str


@dataclass(frozen=True)
class BrokerCredentials:
    """Connection parameters for the telemetry broker."""

    account: str
    password: str = field(repr=False)
    host: str = ""
    port: int = 0
    protocol: str = ""
    user_id: str = ""

    @property
    def uses_tls(self) -> bool:
        return self.protocol.lower() in {"mqtts", "ssl", "tls", "wss"}

    @property
    def uses_websockets(self) -> bool:
        return self.protocol.lower() in {"ws", "wss"}


async def login(
    email: str,
    password: str,
    *,
    api_base: str = API_BASE,
    session: aiohttp.ClientSession | None = None,
    timeout: float = _DEFAULT_TIMEOUT,
) -> LoginSession:
    """Log in to the EcoFlow account and return the session token.

    Raises:
        AuthError: If the login is rejected or the response is malformed.
        TransportError: On network failure or a non-2xx status.
    """
    payload = {
        "email": email,
        "password": base64.b64encode(password.encode("utf-8")).decode("ascii"),
        "scene": LOGIN_SCENE,
        "userType": LOGIN_USER_TYPE,
    }
    body = await _request(
        "POST",
        f"{api_base.rstrip('/')}{LOGIN_PATH}",
        session=session,
        headers=APP_HEADERS,
        data=json.dumps(payload),
        timeout=timeout,
    )
    if body.get("code") != SUCCESS_CODE:
        raise AuthError(f"Login failed: {body.get('message', 'unknown error')}")
    try:
        data = body["data"]
        token = str(data["token"])
        user_id = str(data["user"]["userId"])
    except (KeyError, TypeError) as e:
        raise AuthError(f"Login response is malformed: missing {e}") from e
    log.debug("Logged in as user %s", user_id)
    return LoginSession(token=token, user_id=user_id)


async def fetch_broker_credentials(
    token: str,
    user_id: str,
    *,
    api_base: str = API_BASE,
    session: aiohttp.ClientSession | None = None,
    timeout: float = _DEFAULT_TIMEOUT,
) -> BrokerCredentials:
    """Exchange a session token for broker credentials.

    The certification endpoint does not reliably echo the user id, so the
    *user_id* from the login is stamped onto the result.

    Raises:
        AuthError: If the exchange is rejected.
        InvalidResponse: If a credential field is missing.
        TransportError: On network failure or a non-2xx status.
    """
    headers = {**APP_HEADERS, "Authorization": f"Bearer {token}"}
    body = await _request(
        "GET",
        f"{api_base.rstrip('/')}{CERTIFICATION_PATH}",
        session=session,
        headers=headers,
        params={"userId": user_id},
        timeout=timeout,
    )
    if body.get("code") != SUCCESS_CODE:
        raise AuthError(f"Credential exchange failed: {body.get('message', 'unknown error')}")
    data = body.get("data")
    if not isinstance(data, dict):
        raise InvalidResponse("Certification response has no data.")
    try:
        return BrokerCredentials(
            account=str(data["certificateAccount"]),
            password=str(data["certificatePassword"]),
            host=str(data["url"]),
            port=int(str(data["port"])),
            protocol=str(data.get("protocol") or "mqtts"),
            user_id=user_id,
        )
    except (KeyError, ValueError) as e:
        raise InvalidResponse(f"Certification response is malformed: {e}") from e


async def exchange(
    email: str,
    password: str,
    *,
    api_base: str = API_BASE,
    timeout: float = _DEFAULT_TIMEOUT,
) -> BrokerCredentials:
    """Log in and fetch broker credentials in one go."""
    async with aiohttp.ClientSession() as session:
        login_session = await login(
            email, password, api_base=api_base, session=session, timeout=timeout
        )
        return await fetch_broker_credentials(
            login_session.token,
            login_session.user_id,
            api_base=api_base,
            session=session,
            timeout=timeout,
        )


async def _request(
    method: str,
    url: str,
    *,
    session: aiohttp.ClientSession | None,
    headers: dict[str, str],
    timeout: float,
    data: str | None = None,
    params: dict[str, str] | None = None,
) -> dict[str, object]:
    if session is None:
        async with aiohttp.ClientSession() as own_session:
            return await _request(
                method,
                url,
                session=own_session,
                headers=headers,
                timeout=timeout,
                data=data,
                params=params,
            )
    try:
        async with session.request(
            method,
            url,
            data=data,
            params=params,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            resp.raise_for_status()
            text = await resp.text()
    except aiohttp.ClientResponseError as e:
        raise TransportError(f"{method} {url} returned {e.status}") from e
    except (aiohttp.ClientError, TimeoutError) as e:
        raise TransportError(f"{method} {url} failed: {e}") from e
    try:
        body = json.loads(text)
    except ValueError as e:
        raise AuthError(f"Response from {url} is not JSON: {e}") from e
    if not isinstance(body, dict):
        raise AuthError(f"Response from {url} is not a JSON object.")
    return body
