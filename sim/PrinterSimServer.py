#!/usr/bin/env python3
"""
MKS WiFi / Marlin Printer Firmware Simulator

Simulates the TCP command interface of a 3D printer running MKS WiFi
firmware on top of Marlin.

Protocol Summary:
- TCP server (port 8080 on real hardware)
- ASCII, one command per line terminated with \\n
- Every command is answered; the answer ends with an "ok" line, or carries
  "ok" at the start of the line (M105)
- Single client connection only

Replies produced:
    M105              ok T:25.0 /0.0 B:24.0 /0.0 T0:25.0 /0.0 T1:25.0 /0.0 @:0 B@:0
    M27               M27 <percent>         then ok
    M992              M992 <hh:mm:ss>       then ok
    M994              M994 <file>;<size>    then ok
    M997              M997 IDLE|PRINTING|PAUSE  then ok
    G28 M23 M24 M25 M26 M104 M106 M107 M140   ok
"""

import argparse
import logging
import socketserver
import sys
import threading
import time
from enum import Enum

logger = logging.getLogger("printer_sim")

LINE_END = "\r\n"
AMBIENT_TEMPERATURE = 25.0


class MachineState(Enum):
    """Machine states as reported by M997"""
    IDLE = "IDLE"
    PRINTING = "PRINTING"
    PAUSED = "PAUSE"


class Heater:
    """Heater whose actual temperature moves toward its target at a fixed rate."""

    def __init__(self, clock, heat_rate, actual=AMBIENT_TEMPERATURE):
        self._clock = clock
        self.heat_rate = heat_rate
        self._actual = actual
        self.target = 0.0
        self._updated = clock()

    @property
    def actual(self):
        now = self._clock()
        goal = self.target if self.target > 0 else AMBIENT_TEMPERATURE
        step = self.heat_rate * (now - self._updated)
        if self._actual < goal:
            self._actual = min(goal, self._actual + step)
        else:
            self._actual = max(goal, self._actual - step)
        self._updated = now
        return self._actual

    def set_target(self, target):
        self.actual  # settle the ramp up to now
        self.target = float(target)


class FirmwareState:
    """
    State of the simulated machine.

    Kept on the server rather than the connection: reconnecting does not
    reset the printer.
    """

    def __init__(self, print_duration=600.0, heat_rate=5.0, clock=time.monotonic):
        self._clock = clock
        self.lock = threading.Lock()
        self.state = MachineState.IDLE
        self.extruders = [Heater(clock, heat_rate), Heater(clock, heat_rate)]
        self.bed = Heater(clock, heat_rate, actual=AMBIENT_TEMPERATURE - 1)
        self.fan_speed = 0
        self.homed = False
        self.selected_file = "1:/calibration_cube.gcode"
        self.file_size = 123456
        self.print_duration = print_duration
        self._started_at = None
        self._paused_at = None
        self._paused_total = 0.0

    # ========== Print job ==========

    def elapsed(self):
        """Seconds spent printing, pauses excluded"""
        if self._started_at is None:
            return 0.0
        now = self._paused_at if self._paused_at is not None else self._clock()
        return max(0.0, now - self._started_at - self._paused_total)

    def progress(self):
        if self._started_at is None:
            return 0
        percent = int(self.elapsed() * 100 / self.print_duration)
        if percent >= 100 and self.state == MachineState.PRINTING:
            logger.info("Print of %s finished", self.selected_file)
            self.state = MachineState.IDLE
        return min(percent, 100)

    def start_or_resume(self):
        if self.state == MachineState.PAUSED:
            self._paused_total += self._clock() - self._paused_at
            self._paused_at = None
            self.state = MachineState.PRINTING
        elif self.state == MachineState.IDLE:
            self._started_at = self._clock()
            self._paused_at = None
            self._paused_total = 0.0
            self.state = MachineState.PRINTING

    def pause(self):
        if self.state == MachineState.PRINTING:
            self._paused_at = self._clock()
            self.state = MachineState.PAUSED

    def abort(self):
        self.state = MachineState.IDLE
        self._started_at = None
        self._paused_at = None
        self._paused_total = 0.0


class PrinterSimHandler(socketserver.StreamRequestHandler):
    """
    TCP handler for the printer command protocol.
    Instantiated once per client connection.
    """

    def setup(self):
        super().setup()
        self.firmware = self.server.firmware
        logger.info("Client connected from %s", self.client_address)

    def handle(self):
        """Main connection loop - receives and processes commands"""
        while True:
            try:
                raw_line = self.rfile.readline()
                if not raw_line:
                    # Connection closed by client
                    break

                command_line = raw_line.decode("utf-8", errors="replace").strip()
                if not command_line:
                    continue

                logger.debug("RX: %s", command_line)
                self.server.record(command_line)

                with self.firmware.lock:
                    lines = self.execute_command(command_line)

                response = LINE_END.join(lines) + LINE_END
                logger.debug("TX: %r", response)
                self.send(response.encode("utf-8"))

            except (ConnectionResetError, BrokenPipeError):
                logger.info("Connection reset by client")
                break

        logger.info("Client disconnected")

    def send(self, payload):
        chunk_size = self.server.chunk_size
        if not chunk_size:
            self.wfile.write(payload)
            self.wfile.flush()
            return

        # Split the reply to exercise client-side accumulation
        for start in range(0, len(payload), chunk_size):
            self.wfile.write(payload[start:start + chunk_size])
            self.wfile.flush()
            time.sleep(self.server.chunk_delay)

    @staticmethod
    def parse_parameters(tokens):
        """
        Parse G-code word parameters.

        "T1 S200" -> {"T": "1", "S": "200"}; a bare value ("M106 128") is
        stored under "S".
        """
        params = {}
        for token in tokens:
            if token[0].isalpha():
                params[token[0].upper()] = token[1:]
            else:
                params["S"] = token
        return params

    def execute_command(self, command_line):
        """Execute one command line and return the reply lines"""
        tokens = command_line.split()
        command = tokens[0].upper()
        params = self.parse_parameters(tokens[1:])
        fw = self.firmware

        # Queries
        if command == "M105":
            return [self.format_temperatures()]
        elif command == "M27":
            return [f"M27 {fw.progress()}", "ok"]
        elif command == "M992":
            elapsed = int(fw.elapsed())
            hours, rest = divmod(elapsed, 3600)
            minutes, seconds = divmod(rest, 60)
            return [f"M992 {hours:02d}:{minutes:02d}:{seconds:02d}", "ok"]
        elif command == "M994":
            return [f"M994 {fw.selected_file};{fw.file_size}", "ok"]
        elif command == "M997":
            fw.progress()  # settles a finished job back to IDLE
            return [f"M997 {fw.state.value}", "ok"]

        # Motion and job control
        elif command == "G28":
            fw.homed = True
            return ["ok"]
        elif command == "M23":
            if len(tokens) > 1:
                fw.selected_file = " ".join(tokens[1:])
            return [f"File opened: {fw.selected_file} Size: {fw.file_size}", "File selected", "ok"]
        elif command == "M24":
            fw.start_or_resume()
            return ["ok"]
        elif command == "M25":
            fw.pause()
            return ["ok"]
        elif command == "M26":
            fw.abort()
            return ["ok"]

        # Fan and heaters
        elif command == "M106":
            try:
                fw.fan_speed = max(0, min(255, int(params.get("S", "255"))))
            except ValueError:
                return [f"echo:Invalid fan speed: {command_line}", "ok"]
            return ["ok"]
        elif command == "M107":
            fw.fan_speed = 0
            return ["ok"]
        elif command == "M104":
            return self.set_heater(command_line, params, extruder=True)
        elif command == "M140":
            return self.set_heater(command_line, params, extruder=False)

        else:
            return [f'echo:Unknown command: "{command_line}"', "ok"]

    def set_heater(self, command_line, params, extruder):
        fw = self.firmware
        try:
            target = float(params["S"])
            if extruder:
                index = int(params.get("T", "0"))
                fw.extruders[index].set_target(target)
            else:
                fw.bed.set_target(target)
        except (KeyError, ValueError, IndexError):
            return [f"echo:Invalid heater command: {command_line}", "ok"]
        return ["ok"]

    def format_temperatures(self):
        fw = self.firmware
        e0, e1 = fw.extruders
        t0 = (e0.actual, e0.target)
        t1 = (e1.actual, e1.target)
        bed = (fw.bed.actual, fw.bed.target)
        return (
            f"ok T:{t0[0]:.1f} /{t0[1]:.1f} "
            f"B:{bed[0]:.1f} /{bed[1]:.1f} "
            f"T0:{t0[0]:.1f} /{t0[1]:.1f} "
            f"T1:{t1[0]:.1f} /{t1[1]:.1f} "
            f"@:0 B@:0"
        )


class PrinterSimServer(socketserver.ThreadingMixIn, socketserver.TCPServer):
    """
    TCP server that enforces single-client connection policy.
    """
    # Allow socket reuse to avoid "Address already in use" errors
    allow_reuse_address = True
    daemon_threads = True

    def __init__(self, server_address, RequestHandlerClass=PrinterSimHandler,
                 firmware=None, chunk_size=None, chunk_delay=0.01):
        super().__init__(server_address, RequestHandlerClass)
        self.firmware = firmware or FirmwareState()
        self.chunk_size = chunk_size
        self.chunk_delay = chunk_delay
        self.received = []
        self._active_request = None
        self._lock = threading.Lock()

    def record(self, command_line):
        with self._lock:
            self.received.append(command_line)

    def verify_request(self, request, client_address):
        """Override to enforce single-client policy"""
        with self._lock:
            if self._active_request is not None:
                logger.warning("Rejected connection from %s - server already has a connected client",
                               client_address)
                return False
            self._active_request = request
            return True

    def shutdown_request(self, request):
        """Override to track disconnection"""
        with self._lock:
            if request is self._active_request:
                self._active_request = None
        super().shutdown_request(request)


def main():
    """Main entry point"""
    parser = argparse.ArgumentParser(description="Printer firmware simulator")
    parser.add_argument("--host", default="localhost", help="Address to listen on")
    parser.add_argument("--port", type=int, default=8080, help="TCP port to listen on")
    parser.add_argument("--chunk-size", type=int, default=None,
                        help="Split replies into chunks of this many bytes")
    parser.add_argument("--print-duration", type=float, default=600.0,
                        help="Seconds a simulated print takes")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log every TX/RX line")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(asctime)s] %(message)s",
    )

    print("=" * 70)
    print("MKS WiFi / Marlin Printer Simulator")
    print("=" * 70)
    print(f"Listening on: {args.host}:{args.port}")
    print("Single client connection enforced")
    print("Press Ctrl+C to stop")
    print("=" * 70)

    firmware = FirmwareState(print_duration=args.print_duration)
    try:
        with PrinterSimServer((args.host, args.port), firmware=firmware,
                              chunk_size=args.chunk_size) as server:
            logger.info("Server started successfully")
            server.serve_forever()

    except KeyboardInterrupt:
        logger.info("Server stopped by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
