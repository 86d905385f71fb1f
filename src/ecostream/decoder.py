"""Telemetry payload decoding.

Broker messages arrive either as JSON objects or as one or more
concatenated protobuf frames.  :class:`PayloadDecoder` turns both into
:class:`TelemetryRecord` objects whose field values are normalised to
:data:`FieldValue`::

    decoder = PayloadDecoder()
    for record in decoder.decode("HW51ZEH4SF4E0290", payload):
        store(record.serial_number, record.fields)
"""

from __future__ import annotations

import base64
import enum
import json
import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime

from google.protobuf import json_format
from google.protobuf import message as pb_message

from ecostream import _schema
from ecostream.errors import DecodeError

log = logging.getLogger(__name__)


class Command(enum.IntEnum):
    """Command ids carried in the binary frame header."""

    UNKNOWN = 0
    INVERTER_HEARTBEAT = 1
    POWER_PACK = 32

    @classmethod
    def from_id(cls, cmd_id: int) -> Command:
        """Map a raw command id, folding anything unrecognised into ``UNKNOWN``."""
        try:
            return cls(cmd_id)
        except ValueError:
            return cls.UNKNOWN


@dataclass(frozen=True)
class Composite:
    """A nested list or mapping, kept as compact JSON text."""

    text: str

    def loads(self) -> object:
        return json.loads(self.text)


FieldValue = str | int | float | bool | datetime | Composite


@dataclass
class TelemetryRecord:
    """One decoded telemetry message for one device."""

    serial_number: str
    timestamp: datetime
    fields: dict[str, FieldValue] = field(default_factory=dict)
    command: Command | None = None
    """Binary command the record came from; ``None`` for JSON payloads."""


def _utcnow() -> datetime:
    return datetime.now(UTC)


def normalize_value(value: object) -> FieldValue | None:
    """Convert a decoded value to a :data:`FieldValue`.

    Floats without a fractional part become integers.  Lists and mappings
    become :class:`Composite`.  Returns ``None`` for nulls and values of
    unknown type.
    """
    if isinstance(value, (bool, int, str, datetime, Composite)):
        return value
    if isinstance(value, float):
        return int(value) if value.is_integer() else value
    if isinstance(value, (list, tuple, dict)):
        return Composite(json.dumps(value, separators=(",", ":"), default=str))
    return None


def normalize_fields(data: Mapping[str, object]) -> dict[str, FieldValue]:
    fields: dict[str, FieldValue] = {}
    for key, value in data.items():
        normalized = normalize_value(value)
        if normalized is None:
            log.debug("Skipping %s=%r (%s)", key, value, type(value).__name__)
            continue
        fields[key] = normalized
    return fields


def to_columns(fields: Mapping[str, FieldValue]) -> tuple[list[str], list[object]]:
    """Prepare a record's fields as sorted storage column names and values.

    Keys become ``eco_<key>`` with dots replaced by underscores; composite
    values are stored as their JSON text.
    """
    names: list[str] = []
    values: list[object] = []
    for key in sorted(fields):
        value = fields[key]
        names.append("eco_" + key.replace(".", "_"))
        values.append(value.text if isinstance(value, Composite) else value)
    return names, values


def serial_from_topic(topic: str) -> str:
    """Return the trailing path segment of a device topic."""
    return topic.rsplit("/", 1)[-1]


def split_frames(payload: bytes, serial: str) -> list[bytes]:
    """Split concatenated binary frames on the device serial number.

    Each frame ends right after the serial number, which is the last field
    of the frame header.  This relies on the serial never occurring inside
    the frame data; the wire format does not guarantee that.
    """
    marker = serial.encode("utf-8")
    if not marker:
        return [payload] if payload else []
    frames: list[bytes] = []
    start = 0
    while start < len(payload):
        index = payload.find(marker, start)
        end = len(payload) if index == -1 else index + len(marker)
        frames.append(payload[start:end])
        start = end
    return frames


def format_bytes(title: str, data: bytes, width: int = 16) -> str:
    """Hex dump of *data* for debug logs."""
    lines = [f"{title} ({len(data)} bytes)"]
    for offset in range(0, len(data), width):
        chunk = data[offset : offset + width]
        text = "".join(chr(b) if 32 <= b < 127 else "." for b in chunk)
        lines.append(f"  {offset:04x}  {chunk.hex(' '):<{width * 3}} {text}")
    return "\n".join(lines)


def message_fields(message: pb_message.Message) -> dict[str, FieldValue]:
    """Flatten a protobuf message into a field mapping.

    Every schema field is included, unset scalars with their default.
    """
    fields: dict[str, FieldValue] = {}
    for descriptor in message.DESCRIPTOR.fields:
        value = getattr(message, descriptor.name)
        if descriptor.label == descriptor.LABEL_REPEATED:
            items = [
                json_format.MessageToDict(v, preserving_proto_field_name=True)
                if isinstance(v, pb_message.Message)
                else v
                for v in value
            ]
            fields[descriptor.name] = Composite(json.dumps(items, separators=(",", ":")))
        elif isinstance(value, pb_message.Message):
            as_dict = json_format.MessageToDict(value, preserving_proto_field_name=True)
            fields[descriptor.name] = Composite(json.dumps(as_dict, separators=(",", ":")))
        elif isinstance(value, bytes):
            fields[descriptor.name] = base64.b64encode(value).decode("ascii")
        else:
            fields[descriptor.name] = value
    return fields


def _parse(message_cls: type, data: bytes, what: str) -> pb_message.Message:
    parsed = message_cls()
    try:
        parsed.ParseFromString(data)
    except (pb_message.DecodeError, RecursionError) as exc:
        raise DecodeError(f"Unable to parse {what}: {exc}") from exc
    return parsed


def _log_header(header: pb_message.Message) -> None:
    if not log.isEnabledFor(logging.DEBUG):
        return
    log.debug(
        "-> Header sn=%s version=%d payload_ver=%d src=%d dest=%d data_len=%d "
        "cmd_id=%d cmd_func=%d d_src=%d d_dest=%d need_ack=%d",
        header.device_sn,
        header.version,
        header.payload_ver,
        header.src,
        header.dest,
        header.data_len,
        header.cmd_id,
        header.cmd_func,
        header.d_src,
        header.d_dest,
        header.need_ack,
    )


class PayloadDecoder:
    """Decode broker payloads into :class:`TelemetryRecord` objects.

    *clock* supplies the receipt time stamped on records that carry no
    device timestamp of their own.
    """

    def __init__(self, *, clock: Callable[[], datetime] = _utcnow) -> None:
        self._clock = clock

    def decode(self, serial: str, payload: bytes) -> list[TelemetryRecord]:
        """Decode one broker message.

        JSON objects yield exactly one record.  Anything else is treated as
        binary frames; a frame that fails to parse is dropped and decoding
        continues with the next one.
        """
        record = self.decode_json(serial, payload)
        if record is not None:
            return [record]

        if log.isEnabledFor(logging.DEBUG):
            log.debug("Base64: %s", base64.b64encode(payload).decode("ascii"))
            log.debug("%s", format_bytes("MQTT Body", payload))

        records: list[TelemetryRecord] = []
        for index, frame in enumerate(split_frames(payload, serial)):
            try:
                records.extend(self.decode_frame(serial, frame))
            except DecodeError as exc:
                log.warning("Dropping frame %d from %s: %s", index, serial, exc)
        return records

    def decode_json(self, serial: str, payload: bytes) -> TelemetryRecord | None:
        """Decode a JSON object payload, or return ``None`` if it is not one."""
        try:
            data = json.loads(payload)
        except (ValueError, RecursionError):
            return None
        if not isinstance(data, dict):
            return None

        if log.isEnabledFor(logging.DEBUG):
            log.debug(
                "JSON cmdId=%s cmdFunc=%s version=%s id=%s",
                data.get("cmdId"),
                data.get("cmdFunc"),
                data.get("version"),
                data.get("id"),
            )
        params = data.get("params")
        if isinstance(params, dict):
            data = params

        received = self._clock()
        fields = normalize_fields(data)
        fields.setdefault("serial_number", serial)
        fields.setdefault("timestamp", received)
        return TelemetryRecord(serial_number=serial, timestamp=received, fields=fields)

    def decode_frame(self, serial: str, frame: bytes) -> list[TelemetryRecord]:
        """Decode a single binary frame.

        Raises :class:`~ecostream.errors.DecodeError` if the frame or its
        payload cannot be parsed.  Frames with an unknown command id yield
        no records.
        """
        envelope = _parse(_schema.SendHeaderMsg, frame, "message")
        header = envelope.msg
        command = Command.from_id(header.cmd_id)

        if command is Command.INVERTER_HEARTBEAT:
            heartbeat = _parse(_schema.InverterHeartbeat, header.pdata, "pdata message")
            log.debug("-> InverterHeartbeat %s", heartbeat)
            return [self._record(serial, heartbeat, command)]
        if command is Command.POWER_PACK:
            pack = _parse(_schema.PowerPack, header.pdata, "pdata message")
            log.debug("Power Pack: %s", pack)
            return [self._record(serial, item, command) for item in pack.sys_power_stream]

        _log_header(header)
        log.warning("Unknown Cmd ID %d -> %s", header.cmd_id, serial)
        log.info("Base64: %s", base64.b64encode(frame).decode("ascii"))
        return []

    def _record(
        self, serial: str, message: pb_message.Message, command: Command
    ) -> TelemetryRecord:
        fields = message_fields(message)
        fields.setdefault("serial_number", serial)
        device_ts = fields.get("timestamp")
        if isinstance(device_ts, int) and not isinstance(device_ts, bool) and device_ts > 0:
            timestamp = datetime.fromtimestamp(device_ts, UTC)
        else:
            timestamp = self._clock()
        return TelemetryRecord(
            serial_number=serial, timestamp=timestamp, fields=fields, command=command
        )
