from __future__ import annotations

"""
Append-only audit log for key lifecycle operations.

Every create / public-key fetch / sign / rotation attempt is recorded,
successful or not. Entries are hash-chained (each entry commits to the
previous entry's hash) so that a retained window can be checked for
tampering or reordering with verify_chain().

The log is in-memory only. Durable export is done by registering an
AuditSink, which receives every entry after it has been appended.
"""

import collections
import dataclasses
import logging
import threading
from typing import Any, Deque, Dict, Iterable, List, Literal, Optional

from .utils import Clock, blake2s_hex, iso_utc, system_clock

logger = logging.getLogger(__name__)

AuditOperation = Literal["create_key", "get_public_key", "sign", "rotate_key"]

_AUDIT_OPERATIONS = frozenset({"create_key", "get_public_key", "sign", "rotate_key"})

GENESIS_HASH = "0" * 64
_HASH_DOMAIN = "keyforge:audit:v1"


@dataclasses.dataclass(frozen=True)
class AuditEntry:
    timestamp: float
    key_id: str
    operation: AuditOperation
    success: bool
    latency_ms: float = 0.0
    error: Optional[str] = None
    tx_hash: Optional[str] = None
    seq: int = 0
    prev_hash: str = GENESIS_HASH
    entry_hash: str = ""

    def body(self) -> Dict[str, Any]:
        """Hashed material (everything except entry_hash itself)."""
        return {
            "timestamp": self.timestamp,
            "key_id": self.key_id,
            "operation": self.operation,
            "success": self.success,
            "latency_ms": self.latency_ms,
            "error": self.error,
            "tx_hash": self.tx_hash,
            "seq": self.seq,
            "prev_hash": self.prev_hash,
        }

    def to_dict(self) -> Dict[str, Any]:
        d = self.body()
        d["timestamp"] = iso_utc(self.timestamp)
        d["entry_hash"] = self.entry_hash
        return d


def _entry_hash(body: Dict[str, Any]) -> str:
    return blake2s_hex(body, domain=_HASH_DOMAIN)


class AuditSink:
    """Receives each entry after it is appended (e.g. to ship it elsewhere)."""

    def emit(self, entry: AuditEntry) -> None:
        raise NotImplementedError


class LoggingAuditSink(AuditSink):
    def __init__(self, logger_name: str = "keyforge.audit.events", level: int = logging.INFO) -> None:
        self._logger = logging.getLogger(logger_name)
        self._level = level

    def emit(self, entry: AuditEntry) -> None:
        self._logger.log(
            self._level,
            "audit %s key=%s ok=%s",
            entry.operation,
            entry.key_id,
            entry.success,
            extra={"audit": entry.to_dict()},
        )


class AuditLog:
    """
    Thread-safe append-only audit trail.

    Retention is capped at ``max_entries``; older entries fall off the front
    but the chain head keeps advancing, so sequence numbers stay unique.
    """

    def __init__(
        self,
        *,
        max_entries: int = 100_000,
        clock: Optional[Clock] = None,
        sinks: Optional[Iterable[AuditSink]] = None,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._lock = threading.Lock()
        self._entries: Deque[AuditEntry] = collections.deque(maxlen=int(max_entries))
        self._clock = clock or system_clock
        self._sinks: List[AuditSink] = list(sinks or [])
        self._seq = 0
        self._head = GENESIS_HASH

    def add_sink(self, sink: AuditSink) -> None:
        with self._lock:
            self._sinks.append(sink)

    def append(
        self,
        *,
        key_id: str,
        operation: AuditOperation,
        success: bool,
        latency_ms: float = 0.0,
        error: Optional[str] = None,
        tx_hash: Optional[str] = None,
    ) -> AuditEntry:
        if operation not in _AUDIT_OPERATIONS:
            raise ValueError(f"Unknown audit operation: {operation}")

        with self._lock:
            self._seq += 1
            draft = AuditEntry(
                timestamp=self._clock(),
                key_id=key_id,
                operation=operation,
                success=bool(success),
                latency_ms=float(latency_ms),
                error=error,
                tx_hash=tx_hash,
                seq=self._seq,
                prev_hash=self._head,
            )
            entry = dataclasses.replace(draft, entry_hash=_entry_hash(draft.body()))
            self._entries.append(entry)
            self._head = entry.entry_hash
            sinks = list(self._sinks)

        for sink in sinks:
            try:
                sink.emit(entry)
            except Exception:
                logger.exception("AuditSink.emit failed")
        return entry

    def query(self, key_id: Optional[str] = None, limit: Optional[int] = None) -> List[AuditEntry]:
        """Entries (oldest first), optionally filtered by key and capped to the most recent ``limit``."""
        with self._lock:
            entries = list(self._entries)
        if key_id is not None:
            entries = [e for e in entries if e.key_id == key_id]
        if limit is not None:
            if limit <= 0:
                return []
            entries = entries[-limit:]
        return entries

    def entries(self) -> List[AuditEntry]:
        with self._lock:
            return list(self._entries)

    @property
    def head(self) -> str:
        with self._lock:
            return self._head

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def verify_chain(self) -> bool:
        """Recompute hashes and links across the retained window."""
        entries = self.entries()
        prev: Optional[str] = None
        for entry in entries:
            if prev is not None and entry.prev_hash != prev:
                return False
            if _entry_hash(entry.body()) != entry.entry_hash:
                return False
            prev = entry.entry_hash
        return True


__all__ = [
    "AuditOperation",
    "AuditEntry",
    "AuditSink",
    "LoggingAuditSink",
    "AuditLog",
    "GENESIS_HASH",
]
