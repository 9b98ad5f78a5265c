from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal, Protocol, TypedDict, runtime_checkable

from .request_context import request_id_var

_LOGGER_NAME: Final[str] = "vegetable_ai"
_EVT_PREFIX: Final[str] = "EVT "
_INT_FIELDS: Final[frozenset[str]] = frozenset({"latency_ms", "predicted_class"})
_STR_FIELDS: Final[tuple[str, ...]] = ("label", "model_id", "state", "reason")


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": msg,
        }
        rid = request_id_var.get()
        if rid:
            payload["request_id"] = rid
        fields = _parse_evt_fields(msg)
        if fields:
            payload["message"] = str(fields.pop("event", "event"))
            payload.update(fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _ConsoleFormatter(logging.Formatter):
    """Colorized single-line formatter for interactive terminals.

    Renders ``[HH:MM:SS] [LEVEL] event key=value ...`` with the event name
    emphasized and numeric values highlighted.
    """

    _RESET = "\x1b[0m"
    _BOLD = "\x1b[1m"
    _DIM = "\x1b[2m"
    _GRAY = "\x1b[90m"
    _RED = "\x1b[91m"
    _GREEN = "\x1b[92m"
    _YELLOW = "\x1b[93m"
    _BLUE = "\x1b[94m"
    _MAGENTA = "\x1b[95m"
    _CYAN = "\x1b[36m"

    _LEVELS: Final[tuple[tuple[int, str, str], ...]] = (
        (logging.CRITICAL, "CRIT", _MAGENTA),
        (logging.ERROR, "ERROR", _RED),
        (logging.WARNING, "WARN", _YELLOW),
        (logging.INFO, "INFO", _CYAN),
    )

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now(UTC).strftime("%H:%M:%S")
        parts: list[str] = [f"{self._DIM}[{ts}]{self._RESET}", self._level_tag(record.levelno)]
        if record.name and record.name != _LOGGER_NAME:
            parts.append(f"{self._DIM}{self._GRAY}{record.name}{self._RESET}")

        event, pairs, tail = self._split_message(record.getMessage())
        if event:
            parts.append(f"{self._BOLD}{self._BLUE}{event}{self._RESET}")
        for k, v in pairs:
            parts.append(f"{self._CYAN}{k}{self._RESET}={self._color_value(v)}")
        if tail:
            parts.append(tail)

        rid = request_id_var.get()
        if rid:
            parts.append(f"{self._DIM}{self._GRAY}rid={rid}{self._RESET}")
        line = " ".join(parts)
        if record.exc_info:
            line += f"\n{self._RED}{self.formatException(record.exc_info)}{self._RESET}"
        return line

    def _level_tag(self, level: int) -> str:
        for threshold, name, color in self._LEVELS:
            if level >= threshold:
                return f"{self._BOLD}{color}[{name}]{self._RESET}"
        return f"{self._BOLD}{self._GRAY}[DEBUG]{self._RESET}"

    def _split_message(self, msg: str) -> tuple[str | None, list[tuple[str, str]], str | None]:
        if msg.startswith(_EVT_PREFIX):
            fields = _parse_evt_fields(msg)
            name = str(fields.pop("event", "event"))
            return name, [(k, str(v)) for k, v in fields.items()], None

        toks = msg.split()
        if not toks:
            return None, [], None
        event: str | None = None
        if "=" not in toks[0]:
            event, toks = toks[0], toks[1:]
        pairs: list[tuple[str, str]] = []
        rest: list[str] = []
        for tok in toks:
            key, sep, val = tok.partition("=")
            if sep and key.strip():
                pairs.append((key.strip(), val))
            else:
                rest.append(tok)
        return event, pairs, " ".join(rest) if rest else None

    def _color_value(self, v: str) -> str:
        vs = v.strip()
        if vs.lower() in {"true", "false"}:
            return f"{self._CYAN}{vs}{self._RESET}"
        if _is_float_str(vs):
            return f"{self._GREEN}{vs}{self._RESET}"
        return f"{self._MAGENTA}{vs}{self._RESET}" if vs.endswith("ms") else vs


class LogEvent(TypedDict, total=False):
    event: str
    latency_ms: int
    predicted_class: int
    label: str
    confidence: float
    model_id: str
    state: str
    reason: str


def log_event(event: str, fields: Mapping[str, object] | None = None) -> None:
    """Emit a structured ``EVT`` line understood by both formatters."""
    parts: list[str] = [f"event={event}"]
    if fields is not None:
        for key in sorted(_INT_FIELDS):
            val = fields.get(key)
            if isinstance(val, int) and not isinstance(val, bool):
                parts.append(f"{key}={val}")
        conf = fields.get("confidence")
        if isinstance(conf, float):
            parts.append(f"confidence={conf}")
        for key in _STR_FIELDS:
            val = fields.get(key)
            if isinstance(val, str):
                # Values must not contain spaces
                parts.append(f"{key}={val.replace(' ', '_')}")
    get_logger().info(_EVT_PREFIX + " ".join(parts))


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not msg.startswith(_EVT_PREFIX):
        return {}
    out: dict[str, object] = {}
    for tok in msg[len(_EVT_PREFIX) :].split():
        key, sep, v = tok.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        val: object = v
        if key in _INT_FIELDS and v.isdigit():
            val = int(v)
        elif key == "confidence" and _is_float_str(v):
            val = float(v)
        out[key] = val
    return out


def _is_float_str(s: str) -> bool:
    if not s:
        return False
    return s.count(".") <= 1 and s.replace(".", "", 1).isdigit()


LogStyle = Literal["json", "pretty", "auto"]


def _env_level() -> int:
    v = os.environ.get("VEGETABLE_AI_LOG_LEVEL")
    if not v:
        return logging.INFO
    level = logging.getLevelName(v.strip().upper())
    return level if isinstance(level, int) else logging.INFO


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Initialize or refresh the project logger.

    Replaces any existing StreamHandler with one bound to the current
    ``sys.stdout`` so repeated calls (app factories in tests) never stack
    handlers.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    lvl = _env_level()
    logger.setLevel(lvl)
    logger.propagate = _env_truthy("VEGETABLE_AI_LOG_PROPAGATE") or _env_truthy("LOG_PROPAGATE")

    for h in list(logger.handlers):
        if isinstance(h, logging.StreamHandler):
            logger.removeHandler(h)

    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_choose_formatter(style))
    handler.setLevel(lvl)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)


def _env_truthy(name: str) -> bool:
    v = os.environ.get(name)
    if not v:
        return False
    return v.strip().lower() in {"1", "true", "yes", "on", "y"}


@runtime_checkable
class _HasIsatty(Protocol):
    def isatty(self) -> bool: ...


def _choose_formatter(style: LogStyle = "auto") -> logging.Formatter:
    if style == "json":
        return _JsonFormatter()
    if style == "pretty":
        return _ConsoleFormatter()

    force_json = _env_truthy("VEGETABLE_AI_LOG_JSON") or _env_truthy("LOG_JSON")
    force_pretty = _env_truthy("VEGETABLE_AI_LOG_PRETTY") or _env_truthy("LOG_PRETTY")
    out_stream = sys.stdout
    is_tty = isinstance(out_stream, _HasIsatty) and bool(out_stream.isatty())
    if not force_json and (force_pretty or is_tty):
        return _ConsoleFormatter()
    return _JsonFormatter()
