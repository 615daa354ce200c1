"""Configuration store and connection settings resolution."""

from __future__ import annotations

from enum import Enum
from pathlib import Path
import re
from typing import Iterator, Mapping

import tomllib

from pydantic import BaseModel, ConfigDict, Field, ValidationError

REQUIRED_KEYS: tuple[str, ...] = ("server", "database", "port", "username", "password")

_INTEGER = re.compile(r"[+-]?[0-9]+")
_LINE_BREAK = re.compile(r"\r\n|\r|\n")
_WHITESPACE = " \t\f"
_ESCAPE = re.compile(r"\\(?:u([0-9a-fA-F]{4})|(.)|$)", re.DOTALL)
_ESCAPES = {"t": "\t", "n": "\n", "r": "\r", "f": "\f"}


class ConfigurationError(ValueError):
    """Base class for provider configuration problems."""


class MissingConfiguration(ConfigurationError):
    """Raised when a required key is absent from both the default and mode tiers."""

    def __init__(self, key: str, paths: tuple[str, str]) -> None:
        self.key = key
        self.paths = paths
        super().__init__(
            f"Unable to locate required property '{key}' as '{paths[0]}' or '{paths[1]}'."
        )


class InvalidConfiguration(ConfigurationError):
    """Raised when a value is present but cannot be used as the required type."""

    def __init__(self, key: str, value: object, reason: str = "expected an integer") -> None:
        self.key = key
        self.value = value
        super().__init__(f"Invalid value {value!r} for property '{key}': {reason}.")


class Mode(str, Enum):
    """Connection modes, each with its own pooled source."""

    READONLY = "readonly"
    READWRITE = "readwrite"

    def __str__(self) -> str:
        return self.value


class ConnectionSettings(BaseModel):
    """Resolved parameters for one pooled source."""

    model_config = ConfigDict(frozen=True)

    server: str
    database: str
    port: int = Field(ge=1, le=65535)
    username: str
    password: str = Field(repr=False)
    maxconns: int = Field(default=1, ge=1)


class Config:
    """Read-only store of dotted keys mapped to string values."""

    def __init__(self, properties: Mapping[str, object] | None = None) -> None:
        self._properties: dict[str, str] = {}
        _flatten(properties or {}, "", self._properties)

    @classmethod
    def from_properties(cls, text: str) -> Config:
        """Parse text in the Java properties format.

        Backslash continuations, escapes and `\\uXXXX` sequences are honoured;
        whitespace after the separator is skipped but trailing whitespace in a
        value is kept.
        """

        properties: dict[str, str] = {}
        for line in _logical_lines(text):
            key, value = _split_property(line)
            properties[key] = value
        return cls(properties)

    def get(self, key: str, default: str | None = None) -> str | None:
        return self._properties.get(key, default)

    def keys(self) -> list[str]:
        return sorted(self._properties)

    def sub_properties(self, prefix: str, base: dict[str, str] | None = None) -> dict[str, str]:
        """Return every entry under ``prefix`` with the prefix stripped.

        When ``base`` is supplied the entries are written into it, replacing
        any existing values, and ``base`` itself is returned.
        """

        target = base if base is not None else {}
        lead = prefix + "."
        for key, value in self._properties.items():
            if key.startswith(lead) and len(key) > len(lead):
                target[key[len(lead):]] = value
        return target

    def __contains__(self, key: object) -> bool:
        return key in self._properties

    def __iter__(self) -> Iterator[str]:
        return iter(self.keys())

    def __len__(self) -> int:
        return len(self._properties)

    def __repr__(self) -> str:
        return f"Config({len(self._properties)} properties)"


def load_config(path: str | Path) -> Config:
    """Load a `.toml` or `.properties` file into a Config."""

    config_path = Path(path)
    suffix = config_path.suffix.lower()
    if suffix == ".toml":
        with config_path.open("rb") as handle:
            return Config(tomllib.load(handle))
    if suffix == ".properties":
        return Config.from_properties(config_path.read_text(encoding="utf-8"))
    raise ConfigurationError(f"Unsupported configuration file type: {config_path.name}")


def resolve_settings(config: Config, prefix: str, mode: Mode | str) -> ConnectionSettings:
    """Merge `<prefix>.default` with `<prefix>.<mode>` and validate the result."""

    mode_name = str(mode)
    default_prefix = f"{prefix}.default"
    mode_prefix = f"{prefix}.{mode_name}"
    props = config.sub_properties(default_prefix)
    config.sub_properties(mode_prefix, props)

    for key in REQUIRED_KEYS:
        if key not in props:
            raise MissingConfiguration(key, (f"{default_prefix}.{key}", f"{mode_prefix}.{key}"))

    values: dict[str, object] = {key: props[key] for key in REQUIRED_KEYS}
    values["maxconns"] = props.get("maxconns", "1")
    for key in ("port", "maxconns"):
        values[key] = _parse_int(key, values[key])  # type: ignore[arg-type]

    try:
        return ConnectionSettings(**values)
    except ValidationError as exc:
        error = exc.errors()[0]
        key = str(error["loc"][0]) if error["loc"] else "?"
        raise InvalidConfiguration(key, values.get(key), error["msg"].lower()) from exc


def _parse_int(key: str, value: str) -> int:
    if not _INTEGER.fullmatch(value.strip()):
        raise InvalidConfiguration(key, value)
    return int(value)


def _logical_lines(text: str) -> Iterator[str]:
    pending: str | None = None
    for raw in _LINE_BREAK.split(text):
        line = raw.lstrip(_WHITESPACE)
        if pending is None:
            if not line or line[0] in "#!":
                continue
        else:
            line = pending + line
        trailing = len(line) - len(line.rstrip("\\"))
        if trailing % 2:
            pending = line[:-1]
            continue
        pending = None
        yield line
    if pending is not None:
        yield pending


def _split_property(line: str) -> tuple[str, str]:
    index = 0
    escaped = False
    while index < len(line):
        char = line[index]
        if escaped:
            escaped = False
        elif char == "\\":
            escaped = True
        elif char in "=:" or char in _WHITESPACE:
            break
        index += 1
    rest = line[index:].lstrip(_WHITESPACE)
    if rest[:1] in ("=", ":"):
        rest = rest[1:].lstrip(_WHITESPACE)
    return _unescape(line[:index]), _unescape(rest)


def _unescape(text: str) -> str:
    def _replace(match: re.Match[str]) -> str:
        code, char = match.groups()
        if code is not None:
            return chr(int(code, 16))
        if char is None:
            return ""
        if char == "u":
            raise ConfigurationError(f"Malformed \\uXXXX escape in {text!r}.")
        return _ESCAPES.get(char, char)

    return _ESCAPE.sub(_replace, text)


def _flatten(source: Mapping[str, object], prefix: str, target: dict[str, str]) -> None:
    for key, value in source.items():
        full_key = f"{prefix}{key}"
        if isinstance(value, Mapping):
            _flatten(value, full_key + ".", target)
        elif isinstance(value, bool):
            target[full_key] = str(value).lower()
        else:
            target[full_key] = str(value)


__all__ = [
    "Config",
    "ConfigurationError",
    "ConnectionSettings",
    "InvalidConfiguration",
    "MissingConfiguration",
    "Mode",
    "REQUIRED_KEYS",
    "load_config",
    "resolve_settings",
]
