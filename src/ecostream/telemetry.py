"""Telemetry broker session.

:class:`TelemetryConnection` logs in, fetches broker credentials, opens the
MQTT session and subscribes one topic per known device.  Inbound messages
are put on a queue by the receive loop and drained, in order, by a single
processing task that decodes them and hands every record to the callback::

    async def on_record(sn, fields):
        print(sn, fields)

    connection = TelemetryConnection("email@example.com", "password", on_record)
    await connection.refresh_devices(client)
    sub = await connection.connect()
    await sub.wait()
"""

from __future__ import annotations

import asyncio
import contextlib
import enum
import logging
import ssl
import uuid
from collections.abc import Awaitable, Callable, Iterable

import aiomqtt

from ecostream import auth
from ecostream._constants import API_BASE, CLIENT_ID_PREFIX, DEVICE_TOPIC
from ecostream.client import Client
from ecostream.decoder import FieldValue, PayloadDecoder, format_bytes, serial_from_topic
from ecostream.errors import ConnectError, EcoflowError, TransportError
from ecostream.stats import StatsTracker

log = logging.getLogger(__name__)

RecordCallback = Callable[[str, dict[str, FieldValue]], Awaitable[None]]

_DEFAULT_MAX_RECONNECT_INTERVAL = 600.0  # seconds
_INITIAL_RECONNECT_DELAY = 1.0
_KEEPALIVE = 60


class ConnectionState(enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"


def device_topic(sn: str) -> str:
    """Property topic of device *sn*."""
    return DEVICE_TOPIC.format(sn=sn)


class TelemetryConnection:
    """Long-lived broker session for all known devices.

    Args:
        email: EcoFlow account email.
        password: EcoFlow account password.
        callback: Awaited with ``(serial_number, fields)`` for every
            decoded record.  It runs on the processing task, so a slow
            callback delays the messages queued behind it.
        stats: Registry that counts broker messages per device.
        decoder: Payload decoder; a default one is created if omitted.
        max_reconnect_interval: Upper bound in seconds for the reconnect
            backoff.
        queue_size: Bound of the receive queue; ``0`` means unbounded.
            When full, the receive loop waits for the processing task.
        on_connect: Awaited after every (re)connect, once subscriptions
            are issued.
        on_connection_lost: Awaited with the error (``None`` for a clean
            broker close) whenever the session ends or a reconnect
            attempt fails.
        on_reconnect: Awaited right before each reconnect attempt.

    Failures raised by the hooks are logged and do not affect the session.
    """

    def __init__(
        self,
        email: str,
        password: str,
        callback: RecordCallback,
        *,
        stats: StatsTracker | None = None,
        decoder: PayloadDecoder | None = None,
        api_base: str = API_BASE,
        max_reconnect_interval: float = _DEFAULT_MAX_RECONNECT_INTERVAL,
        queue_size: int = 0,
        on_connect: Callable[[], Awaitable[None]] | None = None,
        on_connection_lost: Callable[[BaseException | None], Awaitable[None]] | None = None,
        on_reconnect: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        self._email = email
        self._password = password
        self._callback = callback
        self._stats = stats if stats is not None else StatsTracker()
        self._decoder = decoder or PayloadDecoder()
        self._api_base = api_base
        self._max_reconnect_interval = max_reconnect_interval
        self._on_connect = on_connect
        self._on_connection_lost = on_connection_lost
        self._on_reconnect = on_reconnect

        self._devices: tuple[str, ...] = ()
        self._subscribed: set[str] = set()
        self._state = ConnectionState.DISCONNECTED
        self._mqtt: aiomqtt.Client | None = None
        self._queue: asyncio.Queue[tuple[str, bytes]] = asyncio.Queue(maxsize=queue_size)
        self._runner: asyncio.Task[None] | None = None
        self._processor: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def stats(self) -> StatsTracker:
        return self._stats

    @property
    def devices(self) -> tuple[str, ...]:
        """Serial numbers of the known devices."""
        return self._devices

    # ------------------------------------------------------------------
    # Known devices
    # ------------------------------------------------------------------

    def set_devices(self, serials: Iterable[str]) -> None:
        """Replace the known-device set.

        The tuple is swapped in one assignment; readers holding the old one
        keep a consistent view.
        """
        self._devices = tuple(dict.fromkeys(serials))

    async def refresh_devices(self, client: Client) -> tuple[str, ...]:
        """Reload the known devices from the HTTP API.

        Devices that appear while connected are subscribed right away.
        """
        devices = await client.list_devices()
        previous = set(self._devices)
        self.set_devices(d.sn for d in devices)
        if self._mqtt is not None:
            for sn in self._devices:
                if sn not in previous and sn not in self._subscribed:
                    await self._try_subscribe(sn)
        return self._devices

    async def run_refresh_loop(self, client: Client, interval: float) -> None:
        """Refresh the device list every *interval* seconds until cancelled."""
        while True:
            await asyncio.sleep(interval)
            try:
                await self.refresh_devices(client)
            except EcoflowError as e:
                log.error("Error getting device list: %s", e)

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    async def connect(self) -> Subscription:
        """Open the broker session and start processing messages.

        Returns once the first connection is established and all known
        devices are subscribed.  Later disconnects are retried in the
        background with exponential backoff.

        Raises:
            ConnectError: If the credential exchange or the first
                handshake fails.
        """
        if self._runner is not None and not self._runner.done():
            raise ConnectError("Already connected.")
        self._state = ConnectionState.CONNECTING
        ready: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        self._processor = asyncio.create_task(self._process_loop())
        self._runner = asyncio.create_task(self._run(ready))

        await asyncio.wait({ready, self._runner}, return_when=asyncio.FIRST_COMPLETED)
        try:
            if ready.done():
                ready.result()
            else:
                self._runner.result()
                raise ConnectError("Broker session ended before connecting.")
        except BaseException:
            await self.close()
            raise
        return Subscription(self)

    async def subscribe_device(self, sn: str) -> str:
        """Subscribe to the property topic of device *sn* and return the topic."""
        if self._mqtt is None:
            raise TransportError("Not connected to the broker.")
        topic = device_topic(sn)
        await self._mqtt.subscribe(topic, qos=1)
        self._subscribed.add(sn)
        log.info("Subscribed to receive parameters %s", sn)
        return topic

    async def close(self) -> None:
        """Stop the session and the processing task."""
        for task in (self._runner, self._processor):
            if task is not None and not task.done():
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._runner = None
        self._processor = None
        self._mqtt = None
        self._state = ConnectionState.DISCONNECTED

    async def handle_message(self, topic: str, payload: bytes) -> int:
        """Count, decode and deliver one broker message.

        Returns the number of records delivered.
        """
        sn = serial_from_topic(topic)
        self._stats.record_broker_message(sn, topic)
        if log.isEnabledFor(logging.DEBUG):
            log.debug("received message on topic %s\n%s", topic, format_bytes("MQTT Body", payload))

        delivered = 0
        for record in self._decoder.decode(sn, payload):
            try:
                await self._callback(record.serial_number, record.fields)
            except Exception:
                log.exception("Record callback failed for %s", record.serial_number)
                continue
            delivered += 1
        return delivered

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    async def _run(self, ready: asyncio.Future[None]) -> None:
        """Connect, receive, and reconnect with backoff until cancelled."""
        delay = _INITIAL_RECONNECT_DELAY
        while True:
            lost: BaseException | None = None
            try:
                creds = await auth.exchange(self._email, self._password, api_base=self._api_base)
                async with aiomqtt.Client(**_mqtt_params(creds)) as mqtt_client:  # type: ignore[arg-type]
                    self._mqtt = mqtt_client
                    self._subscribed = set()
                    self._state = ConnectionState.CONNECTED
                    log.info("Connected to %s://%s:%d", creds.protocol, creds.host, creds.port)
                    await self._subscribe_all()
                    await _call_hook("on_connect", self._on_connect)
                    if not ready.done():
                        ready.set_result(None)
                    delay = _INITIAL_RECONNECT_DELAY
                    async for message in mqtt_client.messages:
                        await self._queue.put((_topic_of(message), _payload_bytes(message.payload)))
            except (aiomqtt.MqttError, EcoflowError) as e:
                if not ready.done():
                    self._state = ConnectionState.DISCONNECTED
                    error = ConnectError(f"Unable to connect to the broker: {e}")
                    error.__cause__ = e
                    ready.set_exception(error)
                    return
                log.error("Error connection lost: %s", e)
                lost = e
            finally:
                self._mqtt = None

            self._state = ConnectionState.RECONNECTING
            await _call_hook("on_connection_lost", self._on_connection_lost, lost)
            await asyncio.sleep(delay)
            delay = min(delay * 2, self._max_reconnect_interval)
            log.info("Reconnecting...")
            await _call_hook("on_reconnect", self._on_reconnect)

    async def _subscribe_all(self) -> None:
        # Subscriptions do not survive a reconnect; reissue them every time.
        for sn in self._devices:
            log.info("Subscribe for MQTT entries of device %s", sn)
            await self._try_subscribe(sn)

    async def _try_subscribe(self, sn: str) -> None:
        try:
            await self.subscribe_device(sn)
        except aiomqtt.MqttError as e:
            log.error("Unable to subscribe for parameters %s: %s", sn, e)

    async def _process_loop(self) -> None:
        while True:
            topic, payload = await self._queue.get()
            try:
                await self.handle_message(topic, payload)
            except Exception:
                log.exception("Failed to process message on topic %s", topic)
            finally:
                self._queue.task_done()


class Subscription:
    """Handle for a running :class:`TelemetryConnection`.

    Returned by :meth:`TelemetryConnection.connect`.  Call :meth:`stop` to
    close the session, or :meth:`wait` to block until it ends.
    """

    def __init__(self, connection: TelemetryConnection) -> None:
        self._connection = connection
        self._task = connection._runner

    @property
    def is_connected(self) -> bool:
        """True when the broker session is currently established."""
        return self._connection.state is ConnectionState.CONNECTED

    async def stop(self) -> None:
        """Close the session and wait for cleanup."""
        await self._connection.close()

    async def wait(self) -> None:
        """Wait until the session ends.

        Raises :class:`asyncio.CancelledError` if the session is cancelled
        externally (e.g. by *Ctrl-C*).
        """
        if self._task is not None:
            await self._task


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _mqtt_params(creds: auth.BrokerCredentials) -> dict[str, object]:
    """Derive aiomqtt.Client constructor kwargs from broker credentials."""
    return {
        "hostname": creds.host,
        "port": creds.port,
        "identifier": f"{CLIENT_ID_PREFIX}_{uuid.uuid4()}_{creds.user_id}",
        "username": creds.account,
        "password": creds.password,
        "tls_context": ssl.create_default_context() if creds.uses_tls else None,
        "transport": "websockets" if creds.uses_websockets else "tcp",
        "keepalive": _KEEPALIVE,
    }


async def _call_hook(
    name: str, hook: Callable[..., Awaitable[None]] | None, *args: object
) -> None:
    """Await an observability hook; its failures are logged, never raised."""
    if hook is None:
        return
    try:
        await hook(*args)
    except Exception:
        log.exception("%s hook failed", name)


def _topic_of(message: aiomqtt.Message) -> str:
    return message.topic.value


def _payload_bytes(payload: object) -> bytes:
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    if payload is None:
        return b""
    return str(payload).encode("utf-8")
