"""Python client for the EcoFlow cloud API and telemetry broker."""

from ecostream.client import Client, CommandRequest, CommandResult, Device, ModuleType
from ecostream.decoder import Command, Composite, PayloadDecoder, TelemetryRecord
from ecostream.errors import (
    AuthError,
    ConnectError,
    DecodeError,
    EcoflowError,
    InvalidResponse,
    RemoteError,
    TransportError,
    UnsupportedMethod,
)
from ecostream.stats import StatsTracker
from ecostream.telemetry import ConnectionState, Subscription, TelemetryConnection

__all__ = [
    "AuthError",
    "Client",
    "Command",
    "CommandRequest",
    "CommandResult",
    "Composite",
    "ConnectError",
    "ConnectionState",
    "DecodeError",
    "Device",
    "EcoflowError",
    "InvalidResponse",
    "ModuleType",
    "PayloadDecoder",
    "RemoteError",
    "StatsTracker",
    "Subscription",
    "TelemetryConnection",
    "TelemetryRecord",
    "TransportError",
    "UnsupportedMethod",
]
