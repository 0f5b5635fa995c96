"""Wire-level constants for the printer's line protocol."""

import re

ENCODING = "utf-8"
LINE_TERMINATOR = "\n"
READ_CHUNK_SIZE = 4096

DEFAULT_PORT = 8080
DEFAULT_CONNECT_TIMEOUT = 5.0
DEFAULT_REPLY_TIMEOUT = 10.0

# Firmware puts the acknowledgment at the start of a line; "1:/ok.gcode" is not an ack.
ACK_TOKEN = "ok"
ACK_RE = re.compile(r"^%s\b" % ACK_TOKEN, re.MULTILINE)

FAN_SPEED_MIN = 0
FAN_SPEED_MAX = 255
EXTRUDER_INDEXES = (0, 1)


class Command:
    """Command codes understood by the firmware."""

    GET_TEMPERATURE = "M105"
    GET_PROGRESS = "M27"
    GET_PRINTING_TIME = "M992"
    GET_FILENAME = "M994"
    GET_STATE = "M997"
    HOME = "G28"
    ABORT = "M26"
    PAUSE = "M25"
    RESUME = "M24"
    FAN_ON = "M106"
    FAN_OFF = "M107"
    SET_EXTRUDER_TEMPERATURE = "M104"
    SET_BED_TEMPERATURE = "M140"
