from __future__ import annotations

import contextvars
import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal, Protocol, runtime_checkable

_LOGGER_NAME: Final[str] = "sketch_learner"
_INT_FIELDS: Final[frozenset[str]] = frozenset(
    {"latency_ms", "epoch", "total_epochs", "n_examples", "n_classes", "count", "bytes"}
)
_FLOAT_FIELDS: Final[frozenset[str]] = frozenset({"loss", "accuracy", "confidence"})
_BOOL_FIELDS: Final[frozenset[str]] = frozenset({"stale", "labels_restored"})

# Request-scoped correlation id, blank if not set
request_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("request_id", default="")


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        rid = request_id_var.get()
        msg = record.getMessage()
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": msg,
        }
        if rid:
            payload["request_id"] = rid
        extra = _parse_evt_fields(msg)
        if extra:
            if "event" in extra:
                payload["message"] = str(extra.pop("event"))
            payload.update(extra)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


_ANSI: Final[dict[str, str]] = {
    "reset": "\x1b[0m",
    "bold": "\x1b[1m",
    "dim": "\x1b[2m",
    "gray": "\x1b[90m",
    "red": "\x1b[91m",
    "green": "\x1b[92m",
    "yellow": "\x1b[93m",
    "blue": "\x1b[94m",
    "magenta": "\x1b[95m",
    "cyan": "\x1b[36m",
}
_LEVEL_TAGS: Final[tuple[tuple[int, str, str], ...]] = (
    (logging.CRITICAL, "CRIT", "magenta"),
    (logging.ERROR, "ERROR", "red"),
    (logging.WARNING, "WARN", "yellow"),
    (logging.INFO, "INFO", "cyan"),
)
# Training metrics and model identity get their own colors on the console.
_METRIC_KEYS: Final[frozenset[str]] = frozenset({"loss", "accuracy", "confidence"})
_IDENTITY_KEYS: Final[frozenset[str]] = frozenset({"model_id", "label"})


def _paint(text: str, *styles: str) -> str:
    prefix = "".join(_ANSI[s] for s in styles)
    return f"{prefix}{text}{_ANSI['reset']}"


class _ConsoleFormatter(logging.Formatter):
    """Colorized single-line formatter for interactive terminals.

    ``EVT`` lines and plain ``name key=value ...`` lines render the same way:
    bold event name, then colored ``key=value`` pairs, then any free text.
    """

    def format(self, record: logging.LogRecord) -> str:
        ts = datetime.now(UTC).strftime("%H:%M:%S")
        event, pairs, tail = _split_message(record.getMessage())
        parts = [_paint(f"[{ts}]", "dim"), _level_tag(record.levelno)]
        if record.name and record.name != _LOGGER_NAME:
            parts.append(_paint(record.name, "dim", "gray"))
        if event:
            parts.append(_paint(event, "bold", "blue"))
        parts.extend(f"{_paint(k, 'dim', 'cyan')}={_value_color(k, v)}" for k, v in pairs)
        if tail:
            parts.append(tail)
        rid = request_id_var.get()
        if rid:
            parts.append(_paint(f"rid={rid}", "dim", "gray"))
        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + _paint(self.formatException(record.exc_info), "red")
        return line


def _level_tag(level: int) -> str:
    for threshold, name, color in _LEVEL_TAGS:
        if level >= threshold:
            return _paint(f"[{name}]", "bold", color)
    return _paint("[DEBUG]", "bold", "gray")


def _split_message(msg: str) -> tuple[str | None, list[tuple[str, str]], str | None]:
    if msg.startswith("EVT "):
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
    free: list[str] = []
    for tok in toks:
        key, sep, val = tok.partition("=")
        if sep and key:
            pairs.append((key, val))
        else:
            free.append(tok)
    return event, pairs, " ".join(free) or None


def _value_color(key: str, val: str) -> str:
    if key in _METRIC_KEYS:
        return _paint(val, "green")
    if key in _IDENTITY_KEYS:
        return _paint(val, "bold")
    if key.endswith(("_ms", "_s")):
        return _paint(val, "magenta")
    if val in ("true", "false"):
        return _paint(val, "yellow" if val == "true" and key == "stale" else "cyan")
    return val


def log_event(event: str, fields: Mapping[str, object] | None = None) -> None:
    """Log a structured ``EVT`` line; values must not contain spaces."""
    parts: list[str] = [f"event={event}"]
    if fields is not None:
        for key, val in fields.items():
            if isinstance(val, bool):
                parts.append(f"{key}={'true' if val else 'false'}")
            elif isinstance(val, float):
                parts.append(f"{key}={val:.6g}")
            elif isinstance(val, int | str):
                parts.append(f"{key}={str(val).replace(' ', '_')}")
    get_logger().info("EVT " + " ".join(parts))


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not msg.startswith("EVT "):
        return {}
    out: dict[str, object] = {}
    for tok in msg[4:].split():
        k, sep, v = tok.partition("=")
        key = k.strip()
        if not sep or not key:
            continue
        val: object = v
        if key in _INT_FIELDS and v.lstrip("-").isdigit():
            val = int(v)
        elif key in _FLOAT_FIELDS and _is_float_str(v):
            val = float(v)
        elif key in _BOOL_FIELDS:
            val = v.lower() in {"1", "true", "yes"}
        out[key] = val
    return out


def _is_float_str(s: str) -> bool:
    if not s:
        return False
    try:
        float(s)
    except ValueError:
        return False
    return True


LogStyle = Literal["json", "pretty", "auto"]


def _env_level() -> int:
    v = os.environ.get("SKETCH_LEARNER_LOG_LEVEL")
    if not v:
        return logging.INFO
    return logging.getLevelNamesMapping().get(v.strip().upper(), logging.INFO)


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Initialize or refresh the project logger.

    Re-binds the stream handler to the current ``sys.stdout`` so that stdout
    replacements (pytest capsys) are honored, without duplicating handlers.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    lvl = _env_level()
    logger.setLevel(lvl)
    logger.propagate = _env_truthy("SKETCH_LEARNER_LOG_PROPAGATE") or _env_truthy("LOG_PROPAGATE")

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


def _choose_formatter(style: LogStyle = "auto") -> logging.Formatter:
    if style == "json":
        return _JsonFormatter()
    if style == "pretty":
        return _ConsoleFormatter()

    force_json = _env_truthy("SKETCH_LEARNER_LOG_JSON") or _env_truthy("LOG_JSON")
    force_pretty = _env_truthy("SKETCH_LEARNER_LOG_PRETTY") or _env_truthy("LOG_PRETTY")

    @runtime_checkable
    class _HasIsatty(Protocol):
        def isatty(self) -> bool: ...

    out_stream = sys.stdout
    is_tty = isinstance(out_stream, _HasIsatty) and bool(out_stream.isatty())
    if not force_json and (force_pretty or is_tty):
        return _ConsoleFormatter()
    return _JsonFormatter()
