# FILE: keyforge/logging.py
from __future__ import annotations

"""
Structured JSON logging for key lifecycle events.

Store and manager log calls pass key fields (key_id, operation, tx_hash,
...) through ``extra=``; callers can also scope fields over a block with
``log_context()``. JSONFormatter lifts both into a flat envelope and puts
anything else under "meta", with credential-like keys masked.
"""

import contextlib
import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import traceback
from typing import Any, Dict, Iterator, Mapping, Optional

from .config import get_settings

_SCHEMA = os.environ.get("KEYFORGE_LOG_SCHEMA", "keyforge.log.v1")
_SERVICE = os.environ.get("KEYFORGE_SERVICE", "keyforge")
_ENV = os.environ.get("KEYFORGE_ENV", os.environ.get("ENV", "dev"))
_FIELD_LIMIT = 8192

_SECRET_KEYS = frozenset(
    {
        "authorization",
        "secret_access_key",
        "access_key_id",
        "session_token",
        "private_key",
        "password",
        "x-api-key",
    }
)

# Lifted to the top level of each event, in this order.
KEY_FIELDS = (
    "key_id",
    "alias",
    "agent_id",
    "operation",
    "region",
    "key_spec",
    "tx_hash",
    "latency_ms",
    "reason",
)

_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}

_scoped: contextvars.ContextVar[Mapping[str, Any]] = contextvars.ContextVar("keyforge_log_fields", default={})


@contextlib.contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """Attach fields to every keyforge log event emitted inside the block."""
    merged = dict(_scoped.get())
    merged.update({k: v for k, v in fields.items() if v is not None})
    token = _scoped.set(merged)
    try:
        yield
    finally:
        _scoped.reset(token)


def current_context() -> Dict[str, Any]:
    return dict(_scoped.get())


def _clip(value: Any) -> Any:
    if isinstance(value, str) and len(value) > _FIELD_LIMIT:
        return value[:_FIELD_LIMIT] + "...<truncated>"
    return value


def scrub_dict(d: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """Copy ``d`` with credential-like keys masked as "***", recursing into nested mappings."""
    clean: Dict[str, Any] = {}
    for key, value in (d or {}).items():
        if str(key).lower() in _SECRET_KEYS:
            clean[key] = "***"
        elif isinstance(value, Mapping):
            clean[key] = scrub_dict(value)
        else:
            clean[key] = _clip(value)
    return clean


class JSONFormatter(logging.Formatter):
    """
    One compact JSON object per record:
    schema/service/env/ts/lvl/logger/msg, then the KEY_FIELDS present
    (scoped context wins over record extras), exception details, and meta.
    """

    def __init__(self, *, include_stack: bool = True) -> None:
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ts = _dt.datetime.fromtimestamp(record.created, tz=_dt.timezone.utc)
        event: Dict[str, Any] = {
            "schema": _SCHEMA,
            "service": _SERVICE,
            "env": _ENV,
            "ts": ts.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": _clip(record.getMessage()),
        }

        scoped = _scoped.get()
        for name in KEY_FIELDS:
            value = scoped[name] if name in scoped else getattr(record, name, None)
            if value is not None:
                event[name] = _clip(value)

        if record.exc_info and self.include_stack:
            etype, evalue, etb = record.exc_info
            event["exc_type"] = getattr(etype, "__name__", str(etype))
            event["exc_message"] = _clip(str(evalue))
            event["stack"] = _clip("".join(traceback.format_exception(etype, evalue, etb)))

        meta = {
            k: v
            for k, v in vars(record).items()
            if k not in _RECORD_ATTRS and k not in KEY_FIELDS and not k.startswith("_")
        }
        if meta:
            event["meta"] = scrub_dict(meta)

        return json.dumps(event, ensure_ascii=False, separators=(",", ":"), default=str)


def configure_json_logging(
    level: Optional[str] = None,
    *,
    stream: Any = None,
    include_stack: bool = True,
    logger_name: str = "keyforge",
) -> logging.Logger:
    """
    Replace the handlers of ``logger_name`` with a single JSON stream handler.

    ``level`` defaults to ``Settings.log_level``. The logger stops
    propagating; the root logger is not touched.
    """
    lvl = getattr(logging, (level or get_settings().log_level).upper(), logging.INFO)

    handler = logging.StreamHandler(stream=stream or sys.stderr)
    handler.setFormatter(JSONFormatter(include_stack=include_stack))
    handler.setLevel(lvl)

    target = logging.getLogger(logger_name)
    for old in list(target.handlers):
        target.removeHandler(old)
    target.addHandler(handler)
    target.setLevel(lvl)
    target.propagate = False
    return target


_configured = False


def get_logger(name: str = "keyforge") -> logging.Logger:
    """Logger under the keyforge tree; JSON output is set up on first call."""
    global _configured
    if not _configured:
        configure_json_logging()
        _configured = True
    return logging.getLogger(name)


__all__ = [
    "KEY_FIELDS",
    "log_context",
    "current_context",
    "scrub_dict",
    "JSONFormatter",
    "configure_json_logging",
    "get_logger",
]
