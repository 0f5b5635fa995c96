"""Async client for the line protocol spoken by MKS WiFi / Marlin 3D-printer firmware."""

from .client import ClientState, PrinterClient
from .config import PrinterConfig, TemperatureLimits, load_config
from .errors import (
    BusyError,
    ConfigError,
    ConnectionClosedError,
    DisconnectionError,
    ExchangeTimeoutError,
    ParseError,
    PrinterConnectionError,
    PrinterError,
    ReceiveError,
    ValidationError,
)
from .parser import (
    Acknowledgment,
    MachineState,
    PrintingFilename,
    PrintingProgress,
    PrintingTime,
    ResponseParser,
    Temperature,
    TemperatureReading,
)

__all__ = [
    "Acknowledgment",
    "BusyError",
    "ClientState",
    "ConfigError",
    "ConnectionClosedError",
    "DisconnectionError",
    "ExchangeTimeoutError",
    "MachineState",
    "ParseError",
    "PrinterClient",
    "PrinterConfig",
    "PrinterConnectionError",
    "PrinterError",
    "PrintingFilename",
    "PrintingProgress",
    "PrintingTime",
    "ReceiveError",
    "ResponseParser",
    "Temperature",
    "TemperatureLimits",
    "TemperatureReading",
    "ValidationError",
    "load_config",
]
