from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal, TypedDict

from .run_context import run_id_var

_LOGGER_NAME: Final[str] = "detection_trainer"
_EVT_PREFIX: Final[str] = "EVT "
_INT_FIELDS: Final[frozenset[str]] = frozenset({"step", "epoch", "latency_ms", "workers"})
_FLOAT_FIELDS: Final[frozenset[str]] = frozenset({"loss", "learning_rate", "map", "weighted_f1"})

LogStyle = Literal["json", "pretty", "auto"]


class LogEvent(TypedDict, total=False):
    event: str
    step: int
    epoch: int
    loss: float
    learning_rate: float
    map: float
    weighted_f1: float
    path: str


def _is_float_str(s: str) -> bool:
    try:
        float(s)
    except ValueError:
        return False
    return True


def _coerce(key: str, raw: str) -> object:
    if key in _INT_FIELDS and raw.lstrip("-").isdigit():
        return int(raw)
    if key in _FLOAT_FIELDS and _is_float_str(raw):
        return float(raw)
    return raw


def _parse_evt_fields(msg: str) -> dict[str, object]:
    """Decode the ``key=value`` tail of a message written by :func:`log_event`."""
    if not msg.startswith(_EVT_PREFIX):
        return {}
    out: dict[str, object] = {}
    for tok in msg[len(_EVT_PREFIX) :].split():
        key, sep, raw = tok.partition("=")
        if sep and key:
            out[key] = _coerce(key, raw)
    return out


def _split_plain(msg: str) -> tuple[str | None, list[tuple[str, str]], list[str]]:
    toks = msg.split()
    event: str | None = None
    if toks and "=" not in toks[0]:
        event, toks = toks[0], toks[1:]
    pairs: list[tuple[str, str]] = []
    rest: list[str] = []
    for tok in toks:
        key, sep, raw = tok.partition("=")
        if sep and key:
            pairs.append((key, raw))
        else:
            rest.append(tok)
    return event, pairs, rest


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": msg,
        }
        rid = run_id_var.get()
        if rid:
            payload["run_id"] = rid
        fields = _parse_evt_fields(msg)
        if "event" in fields:
            payload["message"] = str(fields.pop("event"))
        payload.update(fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _ConsoleFormatter(logging.Formatter):
    """Colorized single-line output for terminals: level tag, event name, key=value pairs."""

    _RESET = "\x1b[0m"
    _DIM = "\x1b[2m"
    _BOLD = "\x1b[1m"
    _LEVELS: tuple[tuple[int, str, str], ...] = (
        (logging.CRITICAL, "CRIT", "\x1b[95m"),
        (logging.ERROR, "ERROR", "\x1b[91m"),
        (logging.WARNING, "WARN", "\x1b[93m"),
        (logging.INFO, "INFO", "\x1b[36m"),
        (logging.NOTSET, "DEBUG", "\x1b[90m"),
    )

    def _paint(self, color: str, text: str) -> str:
        return f"{color}{text}{self._RESET}"

    def _level_tag(self, level: int) -> str:
        for floor, name, color in self._LEVELS:
            if level >= floor:
                return self._paint(self._BOLD + color, f"[{name}]")
        return f"[{level}]"

    def _value(self, key: str, raw: str) -> str:
        if key in {"map", "weighted_f1"}:
            return self._paint(self._BOLD + "\x1b[92m", raw)
        if "loss" in key:
            return self._paint("\x1b[93m", raw)
        if key.endswith(("_s", "_ms")):
            return self._paint("\x1b[95m", raw)
        return raw

    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        if msg.startswith(_EVT_PREFIX):
            fields = _parse_evt_fields(msg)
            event: str | None = str(fields.pop("event", "event"))
            pairs = [(k, str(v)) for k, v in fields.items()]
            rest: list[str] = []
        else:
            event, pairs, rest = _split_plain(msg)
        parts = [
            self._paint(self._DIM, datetime.now(UTC).strftime("[%H:%M:%S]")),
            self._level_tag(record.levelno),
        ]
        if record.threadName and record.threadName != "MainThread":
            parts.append(self._paint(self._DIM, record.threadName))
        if event:
            parts.append(self._paint(self._BOLD + "\x1b[94m", event))
        parts.extend(f"{self._paint(self._DIM, k)}={self._value(k, v)}" for k, v in pairs)
        parts.extend(rest)
        rid = run_id_var.get()
        if rid:
            parts.append(self._paint(self._DIM, f"run={rid}"))
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self._paint("\x1b[91m", self.formatException(record.exc_info))
        return line


def log_event(event: str, fields: Mapping[str, object] | None = None) -> None:
    """Log a structured event line that the JSON formatter expands into typed fields."""
    parts = [f"event={event}"]
    if fields is not None:
        for key in sorted(_INT_FIELDS | _FLOAT_FIELDS):
            val = fields.get(key)
            if isinstance(val, bool):
                continue
            if (key in _INT_FIELDS and isinstance(val, int)) or (
                key in _FLOAT_FIELDS and isinstance(val, float)
            ):
                parts.append(f"{key}={val}")
        path = fields.get("path")
        if isinstance(path, str):
            parts.append(f"path={path.replace(' ', '%20')}")
    get_logger().info(_EVT_PREFIX + " ".join(parts))


def _env_flag(*names: str) -> bool:
    for name in names:
        v = os.environ.get(name, "").strip().lower()
        if v in {"1", "true", "yes", "on", "y"}:
            return True
    return False


def _env_level() -> int:
    name = os.environ.get("DETECTOR_LOG_LEVEL", "").strip().upper()
    level = logging.getLevelName(name) if name else logging.INFO
    return level if isinstance(level, int) else logging.INFO


def _choose_formatter(style: LogStyle) -> logging.Formatter:
    if style == "auto":
        if _env_flag("DETECTOR_LOG_JSON", "LOG_JSON"):
            style = "json"
        elif _env_flag("DETECTOR_LOG_PRETTY", "LOG_PRETTY"):
            style = "pretty"
        else:
            isatty = getattr(sys.stdout, "isatty", None)
            style = "pretty" if callable(isatty) and bool(isatty()) else "json"
    return _ConsoleFormatter() if style == "pretty" else _JsonFormatter()


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Initialize or refresh the project logger.

    Existing stream handlers are replaced by one bound to the current
    ``sys.stdout``, so repeated calls never duplicate output.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    level = _env_level()
    logger.setLevel(level)
    logger.propagate = _env_flag("DETECTOR_LOG_PROPAGATE", "LOG_PROPAGATE")
    for h in list(logger.handlers):
        if isinstance(h, logging.StreamHandler):
            logger.removeHandler(h)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_choose_formatter(style))
    handler.setLevel(level)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)
