# FILE: keyforge/metrics.py
from __future__ import annotations

import logging
from typing import Optional

from prometheus_client import Counter, Histogram

logger = logging.getLogger(__name__)

# Global switch, driven by Settings.metrics_enabled when a KeyRecordStore is
# built. Metric objects stay registered either way.
_ENABLED = True


# ---------------------------------------------------------------------------
# Metrics
# ---------------------------------------------------------------------------

_OP_TOTAL = Counter(
    "keyforge_key_operation_total",
    "Key lifecycle operations by kind and outcome",
    labelnames=("operation", "ok"),
)

_OP_LATENCY = Histogram(
    "keyforge_backend_latency_ms",
    "Latency of backend-backed key operations (ms)",
    buckets=(1, 5, 10, 25, 50, 100, 200, 500, 1000, 2000, 5000),
    labelnames=("operation", "key_spec"),
)

_QUOTA_REJECTED = Counter(
    "keyforge_quota_rejected_total",
    "Sign requests rejected by the hourly usage quota",
)

_ROTATION_TOTAL = Counter(
    "keyforge_rotation_total",
    "Key rotations by trigger and outcome",
    labelnames=("trigger", "ok"),
)


def set_enabled(enabled: bool) -> None:
    global _ENABLED
    _ENABLED = bool(enabled)


def enabled() -> bool:
    return _ENABLED


def observe_operation(
    operation: str,
    ok: bool,
    *,
    latency_ms: Optional[float] = None,
    key_spec: str = "",
) -> None:
    if not _ENABLED:
        return
    try:
        _OP_TOTAL.labels(operation=operation, ok="1" if ok else "0").inc()
        if latency_ms is not None:
            _OP_LATENCY.labels(operation=operation, key_spec=key_spec).observe(max(0.0, latency_ms))
    except Exception as e:  # pragma: no cover
        logger.debug("metric update failed for %s: %s", operation, e)


def record_quota_rejection() -> None:
    if _ENABLED:
        _QUOTA_REJECTED.inc()


def record_rotation(trigger: str, ok: bool) -> None:
    if _ENABLED:
        _ROTATION_TOTAL.labels(trigger=trigger, ok="1" if ok else "0").inc()


__all__ = [
    "set_enabled",
    "enabled",
    "observe_operation",
    "record_quota_rejection",
    "record_rotation",
]
