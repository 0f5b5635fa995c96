"""Typed failures raised by the printer client.

Every public operation either returns a parsed value or raises exactly one
of the classes below. All of them derive from PrinterError so callers can
catch the whole family, and most also derive from the closest builtin so
generic handlers (``except ValueError``, ``except TimeoutError``) keep
working.
"""

from typing import Any, Optional


class PrinterError(Exception):
    pass


class PrinterConnectionError(PrinterError, ConnectionError):
    """The connection to the printer could not be opened."""

    def __init__(self, host: str, port: int, detail: str):
        self.host = host
        self.port = port
        self.detail = detail
        super().__init__(f"Connection error ({host}:{port}): {detail}")


class DisconnectionError(PrinterError):
    """The connection could not be closed cleanly."""

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(f"Disconnection error: {detail}")


class ReceiveError(PrinterError):
    """The transport failed while an exchange was outstanding."""

    def __init__(self, command: str, detail: str):
        self.command = command
        self.detail = detail
        super().__init__(f"Error receiving reply to {command!r}: {detail}")


class ParseError(PrinterError, ValueError):
    """Reply text did not match the grammar for its command family."""

    def __init__(self, kind: str, text: str):
        self.kind = kind
        self.text = text
        super().__init__(f"Cannot parse {kind} reply: {text!r}")


class ValidationError(PrinterError, ValueError):
    """A caller-supplied parameter is outside its allowed range."""

    def __init__(self, field: str, value: Any, minimum: Any = None, maximum: Any = None,
                 reason: Optional[str] = None):
        self.field = field
        self.value = value
        self.minimum = minimum
        self.maximum = maximum
        if reason is None:
            reason = f"must be between {minimum} and {maximum}"
        super().__init__(f"{field} {reason}, got: {value!r}")


class ExchangeTimeoutError(PrinterError, TimeoutError):
    """No complete reply arrived within the exchange timeout."""

    def __init__(self, command: str, timeout: float, partial: str = ""):
        self.command = command
        self.timeout = timeout
        self.partial = partial
        super().__init__(f"No reply to {command!r} within {timeout}s")


class BusyError(PrinterError):
    """An exchange was attempted while another one was still outstanding."""

    def __init__(self, command: str, pending: Optional[str]):
        self.command = command
        self.pending = pending
        super().__init__(f"Cannot send {command!r}: still awaiting reply to {pending!r}")


class ConnectionClosedError(PrinterError):
    """The exchange could not run, or was cut short, because the connection is closed."""

    def __init__(self, command: Optional[str] = None, detail: str = "connection closed"):
        self.command = command
        self.detail = detail
        if command is None:
            super().__init__(detail)
        else:
            super().__init__(f"{command!r} failed: {detail}")


class ConfigError(PrinterError, ValueError):
    """A configuration file is missing or does not match the schema."""
