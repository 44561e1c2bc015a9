from __future__ import annotations

"""
Small shared helpers: clocks, timestamps, canonical JSON and hashing.

Every component that reads time takes an injectable ``Clock`` (a callable
returning epoch seconds) so lifecycle windows can be exercised without
sleeping.
"""

import datetime as _dt
import hashlib
import json
import time
from typing import Any, Callable, Optional

Clock = Callable[[], float]

MS_PER_SECOND = 1000.0
MS_PER_HOUR = 60 * 60 * 1000
MS_PER_DAY = 24 * MS_PER_HOUR


def system_clock() -> float:
    return time.time()


def to_epoch_seconds(value: Any) -> float:
    """
    Normalize a backend timestamp (datetime, epoch seconds, or ISO-8601
    string) to epoch seconds.
    """
    if isinstance(value, _dt.datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=_dt.timezone.utc)
        return value.timestamp()
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        return to_epoch_seconds(_dt.datetime.fromisoformat(s))
    raise TypeError(f"Unsupported timestamp value: {value!r}")


def iso_utc(ts: Optional[float]) -> Optional[str]:
    """RFC 3339 / ISO 8601 in UTC with millisecond precision."""
    if ts is None:
        return None
    dt = _dt.datetime.fromtimestamp(ts, tz=_dt.timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def canonical_json_dumps(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def blake2s_hex(
    data: Any,
    *,
    digest_size: int = 32,
    domain: Optional[str] = None,
) -> str:
    """
    Blake2s hex digest over the canonical JSON form of ``data`` (or the raw
    bytes when ``data`` is bytes), with an optional domain tag mixed in
    first.
    """
    if digest_size < 1 or digest_size > 32:
        raise ValueError("digest_size must be in [1, 32] bytes for blake2s.")

    h = hashlib.blake2s(digest_size=digest_size)
    if domain:
        h.update(b"domain:")
        h.update(domain.encode("utf-8"))
        h.update(b"\x00")
    if isinstance(data, (bytes, bytearray)):
        h.update(bytes(data))
    else:
        h.update(canonical_json_dumps(data).encode("utf-8"))
    return h.hexdigest()


__all__ = [
    "Clock",
    "MS_PER_SECOND",
    "MS_PER_HOUR",
    "MS_PER_DAY",
    "system_clock",
    "to_epoch_seconds",
    "iso_utc",
    "canonical_json_dumps",
    "blake2s_hex",
]
