"""Async TCP client for MKS WiFi / Marlin printer firmware.

Commands are single lines (``M105``, ``M104 T0 S200`` ...) and every command
gets exactly one reply. The client keeps one persistent connection and runs
at most one exchange at a time: a second operation issued while a reply is
still outstanding fails immediately with BusyError instead of interleaving
with the first.

Usage::

    async with PrinterClient("192.168.1.50") as printer:
        reading = await printer.get_temperature()
        await printer.set_bed_temperature(60)
"""

import asyncio
import logging
from decimal import Decimal
from enum import Enum
from typing import Optional

from .buffer import ResponseBuffer
from .config import PrinterConfig, TemperatureLimits
from .errors import (
    BusyError,
    ConnectionClosedError,
    DisconnectionError,
    ExchangeTimeoutError,
    PrinterConnectionError,
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
    TemperatureReading,
)
from .protocol import (
    DEFAULT_CONNECT_TIMEOUT,
    DEFAULT_PORT,
    DEFAULT_REPLY_TIMEOUT,
    ENCODING,
    EXTRUDER_INDEXES,
    FAN_SPEED_MAX,
    FAN_SPEED_MIN,
    LINE_TERMINATOR,
    READ_CHUNK_SIZE,
    Command,
)

logger = logging.getLogger(__name__)


class ClientState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    IDLE = "idle"
    AWAITING_REPLY = "awaiting_reply"


def _check_range(field: str, value, minimum, maximum, integral: bool = False) -> None:
    allowed = (int,) if integral else (int, float)
    if isinstance(value, bool) or not isinstance(value, allowed):
        kind = "an integer" if integral else "a number"
        raise ValidationError(field, value, minimum, maximum, reason=f"must be {kind}")
    if not minimum <= value <= maximum:
        raise ValidationError(field, value, minimum, maximum)


def _format_number(value) -> str:
    """Plain decimal text for a G-code parameter: no exponent, no rounding."""
    if isinstance(value, int):
        return str(value)
    # repr gives the shortest round-tripping digits; Decimal drops the exponent
    text = format(Decimal(repr(value)), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


class _Connection:
    """One open stream to the printer and the reply buffer fed from it."""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter, on_lost):
        self.reader = reader
        self.writer = writer
        self.buffer = ResponseBuffer()
        self.data_ready = asyncio.Event()
        self.closed = False
        self.closing = False
        self.error: Optional[BaseException] = None
        self._on_lost = on_lost
        self.read_task = asyncio.ensure_future(self._read_loop())

    async def _read_loop(self) -> None:
        try:
            while True:
                chunk = await self.reader.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                logger.debug("RX: %r", chunk)
                self.buffer.feed(chunk)
                self.data_ready.set()
        except OSError as e:
            logger.warning("Transport error: %s", e)
            self.error = e
        finally:
            self._mark_closed()
            if not self.closing:
                self._on_lost(self)

    def _mark_closed(self) -> None:
        self.closed = True
        self.data_ready.set()

    def abort(self) -> None:
        self.closing = True
        self._mark_closed()
        if self.read_task is not asyncio.current_task():
            self.read_task.cancel()
        self.writer.close()

    async def close(self) -> None:
        self.abort()
        await asyncio.wait([self.read_task])
        await self.writer.wait_closed()

    @property
    def lost_detail(self) -> str:
        if self.error is not None:
            return str(self.error) or type(self.error).__name__
        return "connection closed by printer"


class PrinterClient:
    """
    Client for one printer endpoint.

    Temperature commands are checked against ``limits`` and fan/extruder
    parameters against their protocol ranges before anything is written; a
    rejected value raises ValidationError and leaves the connection untouched.
    Reply text is turned into typed values by ``parser`` (a ResponseParser),
    which can be swapped for another firmware dialect.
    """

    def __init__(
        self,
        host: str,
        port: int = DEFAULT_PORT,
        limits: Optional[TemperatureLimits] = None,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        reply_timeout: float = DEFAULT_REPLY_TIMEOUT,
        parser: Optional[ResponseParser] = None,
    ):
        self.host = host
        self.port = port
        self.connect_timeout = connect_timeout
        self.reply_timeout = reply_timeout
        self.parser = parser or ResponseParser()
        self._limits = limits or TemperatureLimits()
        self._connection: Optional[_Connection] = None
        self._opening: Optional[asyncio.Task] = None
        self._state = ClientState.DISCONNECTED
        self._pending: Optional[str] = None

    @classmethod
    def from_config(cls, config: PrinterConfig, parser: Optional[ResponseParser] = None) -> "PrinterClient":
        return cls(
            config.host,
            port=config.port,
            limits=config.limits,
            connect_timeout=config.connect_timeout,
            reply_timeout=config.reply_timeout,
            parser=parser,
        )

    @property
    def limits(self) -> TemperatureLimits:
        return self._limits

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state in (ClientState.IDLE, ClientState.AWAITING_REPLY)

    async def __aenter__(self) -> "PrinterClient":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.disconnect()

    # ==================== Connection ====================

    async def connect(self) -> None:
        """
        Open the connection. Does nothing if already connected.

        Callers arriving while a connection attempt is in flight wait for that
        attempt and share its outcome. Cancelling one waiting caller leaves
        the attempt running; disconnect() aborts it.
        """
        if self._state is ClientState.DISCONNECTED:
            self._state = ClientState.CONNECTING
            self._opening = asyncio.ensure_future(self._open())
        elif self._state is not ClientState.CONNECTING:
            return

        opening = self._opening
        try:
            await asyncio.shield(opening)
        except asyncio.CancelledError:
            if not opening.cancelled():
                raise
            raise PrinterConnectionError(self.host, self.port, "disconnected while connecting") from None

    async def _open(self) -> None:
        logger.info("Connecting to printer at %s:%s", self.host, self.port)
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError) as e:
            if self._opening is asyncio.current_task():
                self._opening = None
                self._state = ClientState.DISCONNECTED
            detail = str(e) or f"timed out after {self.connect_timeout}s"
            logger.error("Connection to %s:%s failed: %s", self.host, self.port, detail)
            raise PrinterConnectionError(self.host, self.port, detail) from e

        if self._opening is not asyncio.current_task():
            # disconnect() gave up on this attempt while the stream was opening
            writer.close()
            raise asyncio.CancelledError()

        self._opening = None
        self._connection = _Connection(reader, writer, self._connection_lost)
        self._pending = None
        self._state = ClientState.IDLE
        logger.info("Connected to printer at %s:%s", self.host, self.port)

    async def disconnect(self) -> None:
        """
        Close the connection. Does nothing if already disconnected.

        An exchange still awaiting its reply fails with ConnectionClosedError;
        a connection attempt still in flight is aborted.
        """
        opening = self._opening
        if opening is not None:
            self._opening = None
            self._state = ClientState.DISCONNECTED
            opening.cancel()
            await asyncio.wait([opening])
            logger.info("Aborted connection attempt to %s:%s", self.host, self.port)
            return

        connection = self._connection
        if connection is None:
            logger.debug("disconnect() called on a closed client")
            return

        self._forget(connection)
        try:
            await connection.close()
        except OSError as e:
            raise DisconnectionError(str(e) or type(e).__name__) from e
        logger.info("Disconnected from printer at %s:%s", self.host, self.port)

    def _forget(self, connection: _Connection) -> None:
        connection.abort()
        if self._connection is connection:
            self._connection = None
            self._pending = None
            self._state = ClientState.DISCONNECTED

    def _connection_lost(self, connection: _Connection) -> None:
        logger.warning("Lost connection to %s:%s: %s", self.host, self.port, connection.lost_detail)
        # An outstanding exchange reports the loss itself
        if self._connection is connection and self._pending is None:
            self._forget(connection)

    # ==================== Exchange ====================

    async def _send_command(self, command: str, expect_ack: bool = False) -> str:
        """
        Send one command line and wait for its reply.

        Args:
            command: Protocol line without terminator (e.g. "M104 T0 S200")
            expect_ack: False for strip-ack exchanges (complete on ``ok``,
                token removed), True for raw-ack exchanges (complete on any
                non-empty line, text returned as received)

        Returns:
            The reply text
        """
        connection = self._connection
        if connection is None:
            raise ConnectionClosedError(command, "not connected")
        if self._pending is not None:
            raise BusyError(command, self._pending)
        if connection.closed:
            self._forget(connection)
            raise ConnectionClosedError(command, connection.lost_detail)

        self._pending = command
        self._state = ClientState.AWAITING_REPLY
        try:
            return await self._exchange(connection, command, expect_ack)
        finally:
            if self._connection is connection:
                if connection.closed:
                    self._forget(connection)
                else:
                    self._pending = None
                    self._state = ClientState.IDLE

    async def _exchange(self, connection: _Connection, command: str, expect_ack: bool) -> str:
        stale = connection.buffer.clear()
        if stale:
            logger.warning("Discarding %d stale bytes before %s: %r", len(stale), command, stale)
        connection.data_ready.clear()

        try:
            return await asyncio.wait_for(
                self._roundtrip(connection, command, expect_ack),
                timeout=self.reply_timeout,
            )
        except asyncio.TimeoutError:
            partial = connection.buffer.text
            logger.warning("No reply to %s within %ss (partial: %r)", command, self.reply_timeout, partial)
            raise ExchangeTimeoutError(command, self.reply_timeout, partial) from None
        except OSError as e:
            if connection.closing:
                raise ConnectionClosedError(command, "disconnected while awaiting reply") from e
            raise ReceiveError(command, str(e) or type(e).__name__) from e

    async def _roundtrip(self, connection: _Connection, command: str, expect_ack: bool) -> str:
        logger.debug("TX: %s", command)
        connection.writer.write(f"{command}{LINE_TERMINATOR}".encode(ENCODING))
        await connection.writer.drain()

        while True:
            reply = connection.buffer.take(expect_ack)
            if reply is not None:
                logger.debug("Reply to %s: %r", command, reply)
                return reply
            if connection.closed:
                if connection.closing:
                    raise ConnectionClosedError(command, "disconnected while awaiting reply")
                raise ReceiveError(command, connection.lost_detail)
            await connection.data_ready.wait()
            connection.data_ready.clear()

    async def _acknowledge(self, command: str) -> Acknowledgment:
        reply = await self._send_command(command, expect_ack=True)
        return self.parser.parse_ok(reply)

    # ==================== Queries ====================

    async def get_temperature(self) -> TemperatureReading:
        reply = await self._send_command(Command.GET_TEMPERATURE)
        return self.parser.parse_temperature(reply)

    async def get_printing_progress(self) -> PrintingProgress:
        reply = await self._send_command(Command.GET_PROGRESS)
        return self.parser.parse_printing_progress(reply)

    async def get_printing_time(self) -> PrintingTime:
        reply = await self._send_command(Command.GET_PRINTING_TIME)
        return self.parser.parse_printing_time(reply)

    async def get_printing_filename(self) -> PrintingFilename:
        reply = await self._send_command(Command.GET_FILENAME)
        return self.parser.parse_printing_filename(reply)

    async def get_state(self) -> MachineState:
        reply = await self._send_command(Command.GET_STATE)
        return self.parser.parse_state(reply)

    # ==================== Actions ====================

    async def home(self) -> Acknowledgment:
        return await self._acknowledge(Command.HOME)

    async def abort(self) -> Acknowledgment:
        return await self._acknowledge(Command.ABORT)

    async def pause(self) -> Acknowledgment:
        return await self._acknowledge(Command.PAUSE)

    async def resume(self) -> Acknowledgment:
        return await self._acknowledge(Command.RESUME)

    async def start_fan(self, speed: int = FAN_SPEED_MAX) -> Acknowledgment:
        _check_range("speed", speed, FAN_SPEED_MIN, FAN_SPEED_MAX, integral=True)
        return await self._acknowledge(f"{Command.FAN_ON} {speed}")

    async def stop_fan(self) -> Acknowledgment:
        return await self._acknowledge(Command.FAN_OFF)

    async def set_extruder_temperature(self, temperature: float, extruder: int = 0) -> Acknowledgment:
        _check_range(
            "temperature", temperature,
            self._limits.min_extruder_temperature, self._limits.max_extruder_temperature,
        )
        _check_range("extruder", extruder, min(EXTRUDER_INDEXES), max(EXTRUDER_INDEXES), integral=True)
        return await self._acknowledge(f"{Command.SET_EXTRUDER_TEMPERATURE} T{extruder} S{_format_number(temperature)}")

    async def set_bed_temperature(self, temperature: float) -> Acknowledgment:
        _check_range(
            "temperature", temperature,
            self._limits.min_bed_temperature, self._limits.max_bed_temperature,
        )
        return await self._acknowledge(f"{Command.SET_BED_TEMPERATURE} S{_format_number(temperature)}")
