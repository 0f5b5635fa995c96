"""
Pytest fixtures for printer_link testing.

Provides shared fixtures for:
- Printer firmware simulator management (sim/PrinterSimServer.py)
- A scripted in-process printer for exchange and failure tests
- Connected PrinterClient instances

Environment Variables:
- SIMULATOR_HOST: Hostname for simulator (default: 127.0.0.1)
- SIMULATOR_PORT: Port for simulator (default: 0, an ephemeral port)
- USE_EXTERNAL_SIMULATOR: If "1", don't start local simulator
"""

import asyncio
import os
import socket
import sys
import threading
import time
from pathlib import Path

import pytest

from printer_link import PrinterClient

# Add project paths to import from
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT / "sim"))

from PrinterSimServer import FirmwareState, PrinterSimServer  # noqa: E402

# Configuration from environment variables (for Docker support)
SIMULATOR_HOST = os.environ.get("SIMULATOR_HOST", "127.0.0.1")
SIMULATOR_PORT = int(os.environ.get("SIMULATOR_PORT", "0"))
USE_EXTERNAL_SIMULATOR = os.environ.get("USE_EXTERNAL_SIMULATOR", "0") == "1"


# ============================================================================
# Simulator Fixtures
# ============================================================================

class SimulatorServer:
    """Runs the printer simulator in a background thread."""

    def __init__(self, host=None, port=None, **server_options):
        self.host = host or SIMULATOR_HOST
        self.port = SIMULATOR_PORT if port is None else port
        self.server_options = server_options
        self.server = None
        self._thread = None
        self._external = USE_EXTERNAL_SIMULATOR

    @property
    def external(self):
        return self._external

    @property
    def firmware(self):
        return self.server.firmware if self.server else None

    @property
    def received(self):
        return list(self.server.received) if self.server else []

    def start(self, timeout=5.0):
        """Start the simulator thread (or verify external simulator is running)."""
        if not self._external:
            self.server = PrinterSimServer((self.host, self.port), **self.server_options)
            self.port = self.server.server_address[1]
            self._thread = threading.Thread(
                target=self.server.serve_forever,
                kwargs={"poll_interval": 0.05},
                daemon=True,
            )
            self._thread.start()
            # Already listening; probing would take the single client slot
            return True

        # Wait for external server to be ready
        start_time = time.time()
        while time.time() - start_time < timeout:
            if self._is_port_open():
                return True
            time.sleep(0.05)

        self.stop()
        raise RuntimeError(f"Simulator at {self.host}:{self.port} not responding")

    def stop(self):
        """Stop the simulator thread."""
        if self._external:
            # External simulator - nothing to stop
            return

        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None
        if self._thread:
            self._thread.join(timeout=2.0)
            self._thread = None

    def _is_port_open(self):
        """Check if the simulator port is accepting connections."""
        try:
            with socket.create_connection((self.host, self.port), timeout=0.1):
                return True
        except OSError:
            return False


@pytest.fixture(scope="function")
def simulator():
    """
    Fixture that starts the printer simulator for each test.

    Yields the SimulatorServer instance.
    Automatically stops simulator after test.
    """
    # Short print so progress moves within a test
    sim = SimulatorServer(firmware=FirmwareState(print_duration=2.0, heat_rate=1000.0))
    sim.start()
    yield sim
    sim.stop()


@pytest.fixture
def chunked_simulator():
    """Simulator that writes every reply a few bytes at a time."""
    if USE_EXTERNAL_SIMULATOR:
        pytest.skip("chunked replies need the local simulator")
    sim = SimulatorServer(chunk_size=3, chunk_delay=0.002)
    sim.start()
    yield sim
    sim.stop()


# ============================================================================
# Scripted Printer Fixtures
# ============================================================================

CLOSE = object()


class ScriptedPrinter:
    """
    In-process fake printer running on the test's event loop.

    Replies are scripted per command code with ``on()``. Each action is
    either bytes (written as one chunk), a number (seconds to sleep) or
    CLOSE (drop the connection). A code scripted with no actions gets no
    reply at all. Unscripted commands are answered with "ok".
    """

    def __init__(self):
        self.host = "127.0.0.1"
        self.port = None
        self.received = []
        self.connections = 0
        self.replies = {}
        self.default_reply = [b"ok\n"]
        self._server = None
        self._writers = []
        self._handlers = set()

    def on(self, code, *actions):
        self.replies[code] = list(actions)

    async def start(self):
        self._server = await asyncio.start_server(self._handle, self.host, 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self):
        for writer in self._writers:
            writer.close()
        for task in self._handlers:
            task.cancel()
        self._server.close()
        await self._server.wait_closed()

    async def push(self, data):
        """Write unsolicited bytes to every open connection."""
        for writer in self._writers:
            if not writer.is_closing():
                writer.write(data)
                await writer.drain()

    async def wait_for_commands(self, count, timeout=2.0):
        deadline = time.monotonic() + timeout
        while len(self.received) < count:
            if time.monotonic() > deadline:
                raise AssertionError(f"expected {count} commands, got {self.received}")
            await asyncio.sleep(0.01)

    async def _handle(self, reader, writer):
        self.connections += 1
        self._writers.append(writer)
        self._handlers.add(asyncio.current_task())
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                command = line.decode("utf-8").strip()
                self.received.append(command)
                code = command.split()[0] if command else ""
                for action in self.replies.get(code, self.default_reply):
                    if action is CLOSE:
                        return
                    if isinstance(action, (int, float)):
                        await asyncio.sleep(action)
                    else:
                        writer.write(action)
                        await writer.drain()
        except ConnectionError:
            pass
        finally:
            writer.close()


@pytest.fixture
async def printer():
    """Fixture that provides a running ScriptedPrinter."""
    fake = ScriptedPrinter()
    await fake.start()
    yield fake
    await fake.stop()


# ============================================================================
# Client Fixtures
# ============================================================================

@pytest.fixture
async def client(printer):
    """
    Fixture that provides a PrinterClient connected to the scripted printer.

    Automatically connects and disconnects.
    """
    client = PrinterClient(printer.host, printer.port, reply_timeout=1.0)
    await client.connect()
    yield client
    await client.disconnect()


@pytest.fixture
async def sim_client(simulator):
    """Fixture that provides a PrinterClient connected to the simulator."""
    client = PrinterClient(simulator.host, simulator.port, reply_timeout=2.0)
    await client.connect()
    yield client

    # Cleanup: leave the machine idle for the next test
    if client.is_connected:
        await client.abort()
    await client.disconnect()


@pytest.fixture
def unconnected_client(printer):
    """
    Fixture that provides an unconnected client (for connection tests).
    """
    return PrinterClient(printer.host, printer.port, reply_timeout=1.0)
