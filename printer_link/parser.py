"""Reply parsers for the MKS WiFi / Marlin firmware dialect.

Each ``parse_*`` function takes the text returned by an exchange and either
returns a typed value or raises ParseError. They hold no state and do no
I/O. Typical replies look like::

    M105  ->  T:200.0 /200.0 B:60.0 /60.0 T0:200.0 /200.0 T1:0.0 /0.0 @:0 B@:0
    M27   ->  M27 45                 (or Marlin: SD printing byte 1234/5678)
    M992  ->  M992 01:02:03
    M994  ->  M994 1:/cube.gcode;123456
    M997  ->  M997 PRINTING

ResponseParser bundles the functions so a client can be handed a different
dialect without touching the exchange logic.
"""

import re
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Dict, Optional

from .errors import ParseError
from .protocol import ACK_RE

_NUMBER = r"-?\d+(?:\.\d+)?"

_TOOL_RE = re.compile(r"(?<![\w@])T:\s*(%s)\s*/\s*(%s)" % (_NUMBER, _NUMBER))
_BED_RE = re.compile(r"(?<![\w@])B:\s*(%s)\s*/\s*(%s)" % (_NUMBER, _NUMBER))
_INDEXED_TOOL_RE = re.compile(r"(?<![\w@])T(\d):\s*(%s)\s*/\s*(%s)" % (_NUMBER, _NUMBER))

_PROGRESS_RE = re.compile(r"^M27[ \t]+(\d{1,3})\s*$", re.MULTILINE)
_SD_PROGRESS_RE = re.compile(r"SD printing byte\s+(\d+)\s*/\s*(\d+)")
_NOT_PRINTING_RE = re.compile(r"Not SD printing")

_TIME_RE = re.compile(r"^M992[ \t]+(\d+):(\d{2}):(\d{2})\s*$", re.MULTILINE)
_FILENAME_RE = re.compile(r"^M994[ \t]+([^;\r\n]*[^;\s])(?:\s*;\s*(\d+))?\s*$", re.MULTILINE)
_STATE_RE = re.compile(r"^M997[ \t]+(\w+)\s*$", re.MULTILINE)


class MachineState(Enum):
    """Machine states reported by M997."""
    IDLE = "IDLE"
    PRINTING = "PRINTING"
    PAUSED = "PAUSE"


@dataclass(frozen=True)
class Temperature:
    actual: float
    target: float


@dataclass(frozen=True)
class TemperatureReading:
    """Parsed M105 reply.

    ``extruder`` is the active tool, ``extruders`` holds the per-tool pairs
    (T0, T1, ...) when the firmware reports them.
    """
    extruder: Temperature
    bed: Optional[Temperature] = None
    extruders: Dict[int, Temperature] = field(default_factory=dict)


@dataclass(frozen=True)
class PrintingProgress:
    percent: int
    bytes_printed: Optional[int] = None
    bytes_total: Optional[int] = None


@dataclass(frozen=True)
class PrintingTime:
    elapsed: timedelta

    @property
    def seconds(self) -> int:
        return int(self.elapsed.total_seconds())


@dataclass(frozen=True)
class PrintingFilename:
    path: str
    size: Optional[int] = None

    @property
    def name(self) -> str:
        """File name without the storage prefix (``1:/``) or directories."""
        return self.path.rsplit("/", 1)[-1]


@dataclass(frozen=True)
class Acknowledgment:
    """A bare ``ok``. ``message`` keeps any text that came with it."""
    message: str = ""


def _pair(match) -> Temperature:
    return Temperature(actual=float(match.group(1)), target=float(match.group(2)))


def parse_temperature(text: str) -> TemperatureReading:
    extruders = {
        int(m.group(1)): Temperature(actual=float(m.group(2)), target=float(m.group(3)))
        for m in _INDEXED_TOOL_RE.finditer(text)
    }

    tool = _TOOL_RE.search(text)
    if tool:
        extruder = _pair(tool)
    elif extruders:
        extruder = extruders[min(extruders)]
    else:
        raise ParseError("temperature", text)

    bed = _BED_RE.search(text)
    return TemperatureReading(
        extruder=extruder,
        bed=_pair(bed) if bed else None,
        extruders=extruders,
    )


def parse_printing_progress(text: str) -> PrintingProgress:
    match = _PROGRESS_RE.search(text)
    if match:
        percent = int(match.group(1))
        if percent > 100:
            raise ParseError("progress", text)
        return PrintingProgress(percent=percent)

    # Marlin reports bytes read from the SD card instead of a percentage
    match = _SD_PROGRESS_RE.search(text)
    if match:
        done, total = int(match.group(1)), int(match.group(2))
        if total == 0 or done > total:
            raise ParseError("progress", text)
        return PrintingProgress(percent=done * 100 // total, bytes_printed=done, bytes_total=total)

    if _NOT_PRINTING_RE.search(text):
        return PrintingProgress(percent=0)

    raise ParseError("progress", text)


def parse_printing_time(text: str) -> PrintingTime:
    match = _TIME_RE.search(text)
    if not match:
        raise ParseError("printing time", text)
    hours, minutes, seconds = (int(g) for g in match.groups())
    if minutes > 59 or seconds > 59:
        raise ParseError("printing time", text)
    return PrintingTime(elapsed=timedelta(hours=hours, minutes=minutes, seconds=seconds))


def parse_printing_filename(text: str) -> PrintingFilename:
    match = _FILENAME_RE.search(text)
    if not match:
        raise ParseError("filename", text)
    size = match.group(2)
    return PrintingFilename(path=match.group(1).strip(), size=int(size) if size is not None else None)


def parse_state(text: str) -> MachineState:
    match = _STATE_RE.search(text)
    if not match:
        raise ParseError("state", text)
    try:
        return MachineState(match.group(1).upper())
    except ValueError:
        raise ParseError("state", text) from None


def parse_ok(text: str) -> Acknowledgment:
    if not ACK_RE.search(text):
        raise ParseError("acknowledgment", text)
    return Acknowledgment(message=ACK_RE.sub("", text, count=1).strip())


class ResponseParser:
    """Default dialect. Override single methods to support other firmware."""

    parse_temperature = staticmethod(parse_temperature)
    parse_printing_progress = staticmethod(parse_printing_progress)
    parse_printing_time = staticmethod(parse_printing_time)
    parse_printing_filename = staticmethod(parse_printing_filename)
    parse_state = staticmethod(parse_state)
    parse_ok = staticmethod(parse_ok)
