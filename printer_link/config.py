"""Client settings loaded from YAML.

Example file::

    host: 192.168.1.50
    port: 8080
    reply_timeout: 15
    limits:
      max_extruder_temperature: 260
      max_bed_temperature: 110

Files are validated against ``config_schema.yml`` with yamale before any
value is used.
"""

import ipaddress
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Union

import yamale
import yaml

from .errors import ConfigError
from .protocol import DEFAULT_CONNECT_TIMEOUT, DEFAULT_PORT, DEFAULT_REPLY_TIMEOUT

SCHEMA_PATH = Path(__file__).with_name("config_schema.yml")

_LABEL_RE = re.compile(r"(?!-)[a-z0-9-]{1,63}(?<!-)$", re.IGNORECASE)


@dataclass(frozen=True)
class TemperatureLimits:
    """Bounds applied locally before a temperature command is sent."""
    min_extruder_temperature: float = 0
    max_extruder_temperature: float = 280
    min_bed_temperature: float = 0
    max_bed_temperature: float = 100

    def __post_init__(self):
        if self.min_extruder_temperature > self.max_extruder_temperature:
            raise ValueError(
                f"Extruder limits are inverted: {self.min_extruder_temperature} > {self.max_extruder_temperature}"
            )
        if self.min_bed_temperature > self.max_bed_temperature:
            raise ValueError(
                f"Bed limits are inverted: {self.min_bed_temperature} > {self.max_bed_temperature}"
            )


@dataclass(frozen=True)
class PrinterConfig:
    host: str
    port: int = DEFAULT_PORT
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT
    reply_timeout: float = DEFAULT_REPLY_TIMEOUT
    limits: TemperatureLimits = field(default_factory=TemperatureLimits)

    def __post_init__(self):
        for name in ("connect_timeout", "reply_timeout"):
            if not getattr(self, name) > 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)}")


class HostnameValidator(yamale.validators.Validator):
    """Accepts IP addresses and RFC 1123 host names (one trailing dot allowed)."""

    tag = "hostname"

    def _is_valid(self, value):
        if not isinstance(value, str):
            return False
        try:
            ipaddress.ip_address(value)
            return True
        except ValueError:
            pass

        name = value[:-1] if value.endswith(".") else value
        labels = name.split(".")
        # a dotted all-numeric name is a malformed address, not a host
        return (
            0 < len(name) <= 253
            and not labels[-1].isdigit()
            and all(_LABEL_RE.match(label) for label in labels)
        )


def _schema():
    validators = yamale.validators.DefaultValidators.copy()
    validators[HostnameValidator.tag] = HostnameValidator
    return yamale.make_schema(str(SCHEMA_PATH), validators=validators)


def load_config(path: Union[str, Path]) -> PrinterConfig:
    """Read, validate and convert a YAML client configuration."""
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
        data = yaml.safe_load(content)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Cannot read config {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigError(f"Config {path} must be a mapping, got {type(data).__name__}")

    try:
        yamale.validate(_schema(), yamale.make_data(content=content), strict=True)
    except yamale.YamaleError as e:
        raise ConfigError(f"Config {path} doesn't conform to the schema: {e}") from e

    try:
        return PrinterConfig(
            host=data["host"],
            port=int(data.get("port", DEFAULT_PORT)),
            connect_timeout=float(data.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT)),
            reply_timeout=float(data.get("reply_timeout", DEFAULT_REPLY_TIMEOUT)),
            limits=TemperatureLimits(**(data.get("limits") or {})),
        )
    except ValueError as e:
        raise ConfigError(f"Config {path}: {e}") from e
