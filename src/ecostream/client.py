"""EcoFlow open API client.

Provides signed access to the EcoFlow cloud HTTP API.  The :class:`Client`
class is the main entry point; use :meth:`~Client.list_devices` or
:meth:`~Client.device` to obtain :class:`Device` objects for per-device
operations::

    import asyncio
    from ecostream import Client

    client = Client("access-key", "secret-key")
    devices = await client.list_devices()

    device = client.device("HW51ZEH4SF4E0290")
    params = await device.get_parameters()
    await device.set_permanent_watts(200)

Every call is signed afresh (see :mod:`ecostream._signing`).  Nothing is
retried here; retries are up to the caller.
"""

from __future__ import annotations

import enum
import json
import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass

import aiohttp

from ecostream._constants import (
    API_BASE,
    DEVICE_LIST_PATH,
    JSON_CONTENT_TYPE,
    PERMANENT_WATTS_CMD,
    QUOTA_ALL_PATH,
    QUOTA_PATH,
    SUCCESS_CODE,
)
from ecostream._signing import sign_request
from ecostream.errors import InvalidResponse, RemoteError, TransportError, UnsupportedMethod
from ecostream.stats import StatsTracker

log = logging.getLogger(__name__)

_DEFAULT_TIMEOUT = 15.0  # seconds per HTTP call

_SUPPORTED_METHODS = frozenset({"GET", "POST", "PUT"})


class ModuleType(enum.IntEnum):
    """Device module addressed by a set command."""

    PD = 1
    BMS = 2
    INV = 3
    BMS_SLAVE = 4
    MPPT = 5


@dataclass
class CommandRequest:
    """Body of a ``PUT /iot-open/sign/device/quota`` call."""

    id: str
    sn: str
    params: dict[str, object]
    operate_type: str | None = None
    module_type: ModuleType | int | None = None
    cmd_code: str | None = None

    def to_dict(self) -> dict[str, object]:
        """JSON form of the request; unset optional fields are left out."""
        body: dict[str, object] = {"id": self.id}
        if self.operate_type:
            body["operateType"] = self.operate_type
        if self.module_type:
            body["moduleType"] = int(self.module_type)
        if self.cmd_code:
            body["cmdCode"] = self.cmd_code
        body["sn"] = self.sn
        body["params"] = self.params
        return body


@dataclass(frozen=True)
class CommandResult:
    """Vendor acknowledgement of a set command."""

    code: str
    message: str


class Device:
    """A specific EcoFlow device.

    Obtained via :meth:`Client.list_devices` or :meth:`Client.device`.

    Example::

        device = client.device("HW51ZEH4SF4E0290")
        params = await device.get_parameters()
        await device.set_permanent_watts(150)
    """

    def __init__(self, client: Client, dev_info: Mapping[str, object]) -> None:
        self._client = client
        self._sn = str(dev_info["sn"])
        self._online = _online_flag(dev_info.get("online"))

    def __repr__(self) -> str:
        return f"Device(sn={self._sn!r}, online={self._online})"

    @property
    def sn(self) -> str:
        """Serial number of this device."""
        return self._sn

    @property
    def online(self) -> int:
        """Online flag as reported by the device list (``1`` = online)."""
        return self._online

    async def get_parameters(self, selector: str = "data") -> dict[str, object]:
        """Fetch all quota values for this device.

        See :meth:`Client.get_device_parameters`.
        """
        return await self._client.get_device_parameters(self._sn, selector)

    async def set_parameter(
        self,
        params: dict[str, object],
        *,
        cmd_code: str | None = None,
        operate_type: str | None = None,
        module_type: ModuleType | int | None = None,
    ) -> CommandResult:
        """Write parameters to this device."""
        request = CommandRequest(
            id=_request_id(),
            sn=self._sn,
            params=params,
            operate_type=operate_type,
            module_type=module_type,
            cmd_code=cmd_code,
        )
        return await self._client.set_device_parameter(request)

    async def set_permanent_watts(self, watts: float) -> CommandResult:
        """Set the permanent output power of a micro-inverter."""
        return await self._client.set_permanent_watts(self._sn, watts)


class Client:
    """EcoFlow open API client.

    Authenticates each request with the account's *access_key* and
    *secret_key*.  When *stats* is given, every successful per-device
    response is counted as an HTTP message for that device.
    """

    def __init__(
        self,
        access_key: str,
        secret_key: str,
        *,
        api_base: str = API_BASE,
        timeout: float = _DEFAULT_TIMEOUT,
        stats: StatsTracker | None = None,
    ) -> None:
        self._access_key = access_key
        self._secret_key = secret_key
        self._api_base = api_base.rstrip("/")
        self._timeout = timeout
        self._stats = stats

    @property
    def api_base(self) -> str:
        return self._api_base

    # ------------------------------------------------------------------
    # Devices
    # ------------------------------------------------------------------

    async def list_devices(self) -> list[Device]:
        """Fetch the devices linked to the account.

        Shared devices are not included.

        Raises:
            RemoteError: If the vendor returns a non-success code.
        """
        body = await self._call("GET", DEVICE_LIST_PATH)
        _check_code(body, "get device list")
        data = body.get("data") or []
        if not isinstance(data, list):
            raise InvalidResponse("Device list response has no device array.")
        return [Device(self, d) for d in data if isinstance(d, dict) and "sn" in d]

    def device(self, sn: str) -> Device:
        """Return a :class:`Device` handle for *sn* without an API call."""
        return Device(self, {"sn": sn})

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    async def get_device_parameters(self, sn: str, selector: str = "data") -> dict[str, object]:
        """Fetch all quota values of device *sn*.

        With a non-empty *selector* the mapping stored under that top-level
        key of the response is returned; with ``""`` the whole decoded
        response is returned.

        Raises:
            RemoteError: If the vendor returns a non-success code.
            InvalidResponse: If *selector* does not name a mapping.
        """
        body = await self._call("GET", QUOTA_ALL_PATH, {"sn": sn})
        _check_code(body, "get parameters")
        if self._stats is not None:
            self._stats.record_http_message(sn)
        if not selector:
            return body
        selected = body.get(selector)
        if not isinstance(selected, dict):
            raise InvalidResponse(f"Response has no '{selector}' mapping, can't process it.")
        return selected

    async def set_device_parameter(
        self, request: CommandRequest | Mapping[str, object]
    ) -> CommandResult:
        """Write device parameters.

        *request* is a :class:`CommandRequest` or an already-built JSON
        body with ``id``, ``sn`` and ``params``.  Nothing should be assumed
        applied unless this returns.

        Raises:
            RemoteError: If the vendor returns a non-success code.
        """
        payload = request.to_dict() if isinstance(request, CommandRequest) else dict(request)
        log.debug("SetDeviceParameter request=%s", payload)
        body = await self._call("PUT", QUOTA_PATH, payload)
        log.debug("SetDeviceParameter response=%s", body)
        _check_code(body, "set device parameter")
        return CommandResult(code=str(body.get("code")), message=str(body.get("message", "")))

    async def set_permanent_watts(self, sn: str, watts: float) -> CommandResult:
        """Set the permanent output power of micro-inverter *sn*.

        The vendor expects the value in tenths of a watt, so 200 W is sent
        as ``2000``.
        """
        value = watts * 10
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        request = CommandRequest(
            id=_request_id(),
            sn=sn,
            params={"permanentWatts": value},
            cmd_code=PERMANENT_WATTS_CMD,
        )
        result = await self.set_device_parameter(request)
        log.info("Set permanent watts of %s to %s: %s", sn, watts, result.message)
        return result

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    async def _call(
        self,
        method: str,
        path: str,
        params: Mapping[str, object] | None = None,
    ) -> dict[str, object]:
        async with aiohttp.ClientSession() as session:
            return await _execute(
                session,
                method,
                f"{self._api_base}{path}",
                params,
                self._access_key,
                self._secret_key,
                timeout=self._timeout,
            )


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _request_id() -> str:
    return str(int(time.time() * 1000))


def _online_flag(value: object) -> int:
    if value is None or value == "":
        return 0
    if isinstance(value, (bool, int, float)):
        return int(value)
    try:
        return int(str(value))
    except ValueError as e:
        raise InvalidResponse(f"Unexpected online flag in device list: {value!r}") from e


def _check_code(body: Mapping[str, object], operation: str) -> None:
    code = body.get("code")
    if code != SUCCESS_CODE:
        raise RemoteError(str(code), str(body.get("message", "")), operation=operation)


async def _execute(
    session: aiohttp.ClientSession,
    method: str,
    url: str,
    params: Mapping[str, object] | None,
    access_key: str,
    secret_key: str,
    *,
    timeout: float = _DEFAULT_TIMEOUT,
) -> dict[str, object]:
    """Send one signed request and return the decoded JSON object.

    GET parameters travel in the canonical query string; POST and PUT
    parameters travel as a JSON body.  Both are signed the same way.
    """
    method = method.upper()
    if method not in _SUPPORTED_METHODS:
        log.error("Only GET, POST and PUT methods are supported, got %s", method)
        raise UnsupportedMethod(f"Unsupported HTTP method: {method}")

    signed = sign_request(params, access_key, secret_key)
    headers = signed.headers
    data: str | None = None
    if method == "GET":
        if signed.query_string:
            url = f"{url}?{signed.query_string}"
    else:
        headers["Content-Type"] = JSON_CONTENT_TYPE
        data = json.dumps(dict(params or {}), separators=(",", ":"))

    try:
        async with session.request(
            method,
            url,
            data=data,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            resp.raise_for_status()
            text = await resp.text()
    except aiohttp.ClientResponseError as e:
        raise TransportError(f"Response status is failed|url={url}, statusCode={e.status}") from e
    except (aiohttp.ClientError, TimeoutError) as e:
        raise TransportError(f"Request to {url} failed: {e}") from e

    try:
        body = json.loads(text)
    except ValueError as e:
        raise InvalidResponse(f"Response from {url} is not JSON: {e}") from e
    if not isinstance(body, dict):
        raise InvalidResponse(f"Response from {url} is not a JSON object.")
    return body
