from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Literal, Mapping, Optional, Tuple, Union

from . import metrics
from .audit import AuditEntry, AuditLog, AuditOperation, LoggingAuditSink
from .backend import KeyBackend
from .config import Settings, get_settings
from .crypto import (
    KEY_USAGE_SIGN_VERIFY,
    KeySpec,
    extract_public_key_from_der,
    public_key_hex,
    signing_params,
)
from .errors import (
    BackendUnavailableError,
    KeyManagementError,
    KeyRetiredError,
    NotFoundError,
)
from .utils import Clock, iso_utc, system_clock, to_epoch_seconds

logger = logging.getLogger(__name__)

KeyStatus = Literal["active", "rotating", "retired"]

Signer = Callable[[bytes], bytes]


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class KeyInfo:
    """Metadata returned when a key is created or rotated in."""

    key_id: str
    key_arn: str
    public_key: bytes
    public_key_hex: str
    key_spec: KeySpec
    created_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key_id": self.key_id,
            "key_arn": self.key_arn,
            "public_key_hex": self.public_key_hex,
            "key_spec": self.key_spec.value,
            "created_at": iso_utc(self.created_at),
        }


@dataclass
class KeyRecord:
    """
    Per-key signing state owned by a KeyRecordStore.

    ``agent_id`` is a weak back-reference; the store never resolves it.
    """

    info: KeyInfo
    status: KeyStatus = "active"
    sign_count: int = 0
    last_used_at: Optional[float] = None
    agent_id: Optional[str] = None
    description: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)
    rotated_from: Optional[str] = None
    retired_at: Optional[float] = None

    @property
    def key_id(self) -> str:
        return self.info.key_id

    @property
    def key_arn(self) -> str:
        return self.info.key_arn

    @property
    def public_key(self) -> bytes:
        return self.info.public_key

    @property
    def key_spec(self) -> KeySpec:
        return self.info.key_spec

    @property
    def created_at(self) -> float:
        return self.info.created_at

    def to_dict(self) -> Dict[str, Any]:
        d = self.info.to_dict()
        d.update(
            {
                "status": self.status,
                "sign_count": self.sign_count,
                "last_used_at": iso_utc(self.last_used_at),
                "agent_id": self.agent_id,
                "description": self.description,
                "tags": dict(self.tags),
                "rotated_from": self.rotated_from,
                "retired_at": iso_utc(self.retired_at),
            }
        )
        return d


@dataclass(frozen=True)
class SignResult:
    signature: bytes
    key_id: str
    algorithm: str
    latency_ms: float


@dataclass(frozen=True)
class StoreStats:
    total_keys: int
    active_keys: int
    retired_keys: int
    total_sign_operations: int
    avg_sign_latency_ms: float
    audit_entries: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_keys": self.total_keys,
            "active_keys": self.active_keys,
            "retired_keys": self.retired_keys,
            "total_sign_operations": self.total_sign_operations,
            "avg_sign_latency_ms": self.avg_sign_latency_ms,
            "audit_entries": self.audit_entries,
        }


@dataclass(frozen=True)
class CostEstimate:
    monthly_key_storage: float
    monthly_signing_estimate: float
    total_monthly_estimate: float
    details: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "monthly_key_storage": self.monthly_key_storage,
            "monthly_signing_estimate": self.monthly_signing_estimate,
            "total_monthly_estimate": self.total_monthly_estimate,
            "details": self.details,
        }


def _elapsed_ms(start: float) -> float:
    return (time.perf_counter() - start) * 1000.0


def _error_text(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class KeyRecordStore:
    """
    Lifecycle manager for individual key handles in one keyspace / region.

    Owns the key_id -> KeyRecord map and the audit log. Signing and rotation
    of a given key are serialized by a per-key lock held across the backend
    call, so sign_count stays monotonic and a key cannot be signed with while
    it is being rotated out.
    """

    def __init__(
        self,
        backend: KeyBackend,
        *,
        region: Optional[str] = None,
        settings: Optional[Settings] = None,
        audit_log: Optional[AuditLog] = None,
        clock: Optional[Clock] = None,
    ) -> None:
        self._backend = backend
        self._settings = settings or get_settings()
        self.region = region or self._settings.region
        self._clock = clock or system_clock
        metrics.set_enabled(self._settings.metrics_enabled)
        self._audit = audit_log or AuditLog(
            max_entries=self._settings.audit_max_entries,
            clock=self._clock,
        )
        if self._settings.audit_log_events:
            self._audit.add_sink(LoggingAuditSink())

        self._lock = threading.RLock()
        self._keys: Dict[str, KeyRecord] = {}
        self._key_locks: Dict[str, threading.Lock] = {}

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #

    def _lookup(self, key_id: str) -> Tuple[KeyRecord, threading.Lock]:
        with self._lock:
            record = self._keys.get(key_id)
            if record is None:
                raise NotFoundError(f"Key {key_id} not found in manager")
            return record, self._key_locks[key_id]

    def _audit_entry(
        self,
        operation: AuditOperation,
        key_id: str,
        *,
        success: bool,
        start: float,
        error: Optional[BaseException] = None,
        tx_hash: Optional[str] = None,
        key_spec: str = "",
    ) -> AuditEntry:
        latency_ms = _elapsed_ms(start)
        metrics.observe_operation(operation, success, latency_ms=latency_ms, key_spec=key_spec)
        return self._audit.append(
            key_id=key_id,
            operation=operation,
            success=success,
            latency_ms=latency_ms,
            error=_error_text(error) if error is not None else None,
            tx_hash=tx_hash,
        )

    # ------------------------------------------------------------------ #
    # Creation                                                           #
    # ------------------------------------------------------------------ #

    def create_key(
        self,
        key_spec: Union[KeySpec, str],
        description: Optional[str] = None,
        tags: Optional[Mapping[str, str]] = None,
        *,
        agent_id: Optional[str] = None,
    ) -> KeyInfo:
        """
        Create a key in the backend, fetch and extract its public key, and
        register it as active.
        """
        start = time.perf_counter()
        key_id = "unknown"
        spec_label = str(getattr(key_spec, "value", key_spec))
        try:
            spec = KeySpec.parse(key_spec)
            desc = description or f"Managed signing key ({spec.value})"
            key_tags = dict(tags) if tags else {"Project": self._settings.project_tag}
            meta = self._backend.create_key(
                key_spec=spec.value,
                key_usage=KEY_USAGE_SIGN_VERIFY,
                description=desc,
                tags=key_tags,
            )
            key_id = meta.key_id
            pub = self._backend.get_public_key(key_id)
            raw = extract_public_key_from_der(pub.public_key_der, spec)
            created_at = to_epoch_seconds(meta.created_at)
        except Exception as exc:
            self._audit_entry("create_key", key_id, success=False, start=start, error=exc, key_spec=spec_label)
            logger.warning(
                "create_key failed: %s",
                exc,
                extra={"key_id": key_id, "operation": "create_key", "key_spec": spec_label, "region": self.region},
            )
            if isinstance(exc, KeyManagementError):
                raise
            raise BackendUnavailableError(f"create_key failed: {_error_text(exc)}") from exc

        info = KeyInfo(
            key_id=key_id,
            key_arn=meta.arn,
            public_key=raw,
            public_key_hex=public_key_hex(raw),
            key_spec=spec,
            created_at=created_at,
        )
        record = KeyRecord(info=info, agent_id=agent_id, description=desc, tags=key_tags)
        with self._lock:
            self._keys[key_id] = record
            self._key_locks[key_id] = threading.Lock()

        self._audit_entry("create_key", key_id, success=True, start=start, key_spec=spec.value)
        logger.info(
            "created key %s",
            key_id,
            extra={
                "key_id": key_id,
                "operation": "create_key",
                "key_spec": spec.value,
                "region": self.region,
                "agent_id": agent_id,
            },
        )
        return info

    def get_public_key(self, key_id: str) -> bytes:
        """Re-fetch the public key from the backend and extract the raw bytes."""
        record, _ = self._lookup(key_id)
        start = time.perf_counter()
        try:
            pub = self._backend.get_public_key(key_id)
            raw = extract_public_key_from_der(pub.public_key_der, record.key_spec)
        except Exception as exc:
            self._audit_entry("get_public_key", key_id, success=False, start=start, error=exc)
            if isinstance(exc, KeyManagementError):
                raise
            raise BackendUnavailableError(f"get_public_key failed: {_error_text(exc)}") from exc
        self._audit_entry("get_public_key", key_id, success=True, start=start, key_spec=record.key_spec.value)
        return raw

    # ------------------------------------------------------------------ #
    # Signing                                                            #
    # ------------------------------------------------------------------ #

    def sign(self, key_id: str, message: bytes, tx_hash: Optional[str] = None) -> SignResult:
        record, key_lock = self._lookup(key_id)
        with key_lock:
            if record.status != "active":
                raise KeyRetiredError(f"Key {key_id} is {record.status} and cannot be used for signing")

            params = signing_params(record.key_spec)
            payload = params.prepare(bytes(message))
            start = time.perf_counter()
            try:
                result = self._backend.sign(
                    key_id=key_id,
                    message=payload,
                    message_type=params.message_type,
                    signing_algorithm=params.algorithm,
                )
            except Exception as exc:
                self._audit_entry(
                    "sign",
                    key_id,
                    success=False,
                    start=start,
                    error=exc,
                    tx_hash=tx_hash,
                    key_spec=record.key_spec.value,
                )
                logger.warning(
                    "sign failed: %s",
                    exc,
                    extra={"key_id": key_id, "operation": "sign", "tx_hash": tx_hash, "key_spec": record.key_spec.value},
                )
                if isinstance(exc, KeyManagementError):
                    raise
                raise BackendUnavailableError(f"sign failed: {_error_text(exc)}") from exc

            with self._lock:
                record.sign_count += 1
                record.last_used_at = self._clock()
            entry = self._audit_entry(
                "sign",
                key_id,
                success=True,
                start=start,
                tx_hash=tx_hash,
                key_spec=record.key_spec.value,
            )

        return SignResult(
            signature=bytes(result.signature),
            key_id=key_id,
            algorithm=result.signing_algorithm or params.algorithm,
            latency_ms=entry.latency_ms,
        )

    def get_signer(self, key_id: str) -> Signer:
        """
        Return ``signer(message) -> signature`` bound to ``key_id``.

        Raises NotFoundError now if the key is unknown; status is checked on
        each call.
        """
        self._lookup(key_id)

        def signer(message: bytes) -> bytes:
            return self.sign(key_id, message).signature

        return signer

    # ------------------------------------------------------------------ #
    # Rotation                                                           #
    # ------------------------------------------------------------------ #

    def rotate_key(self, key_id: str) -> KeyInfo:
        """
        Replace an active key with a fresh key of the same spec.

        The old record moves active -> rotating -> retired and keeps its
        history; the new record inherits the agent association. If the
        backend fails the old record goes back to active.
        """
        record, key_lock = self._lookup(key_id)
        with key_lock:
            if record.status != "active":
                raise KeyRetiredError(f"Key {key_id} is {record.status} and cannot be rotated")

            with self._lock:
                record.status = "rotating"
            start = time.perf_counter()
            try:
                new_info = self.create_key(
                    record.key_spec,
                    description=f"Rotated from {key_id}",
                    tags={"RotatedFrom": key_id, "AgentId": record.agent_id or "unknown"},
                    agent_id=record.agent_id,
                )
            except Exception as exc:
                with self._lock:
                    record.status = "active"
                self._audit_entry("rotate_key", key_id, success=False, start=start, error=exc)
                logger.warning(
                    "rotate_key failed: %s",
                    exc,
                    extra={"key_id": key_id, "operation": "rotate_key", "agent_id": record.agent_id},
                )
                raise

            with self._lock:
                record.status = "retired"
                record.retired_at = self._clock()
                self._keys[new_info.key_id].rotated_from = key_id
            self._audit_entry("rotate_key", key_id, success=True, start=start, key_spec=record.key_spec.value)

        logger.info(
            "rotated key %s -> %s",
            key_id,
            new_info.key_id,
            extra={"key_id": key_id, "operation": "rotate_key", "agent_id": record.agent_id},
        )
        return new_info

    # ------------------------------------------------------------------ #
    # Agent association                                                  #
    # ------------------------------------------------------------------ #

    def set_agent_id(self, key_id: str, agent_id: str) -> None:
        with self._lock:
            record = self._keys.get(key_id)
            if record is None:
                raise NotFoundError(f"Key {key_id} not found in manager")
            record.agent_id = agent_id

    def get_key_for_agent(self, agent_id: str) -> Optional[KeyRecord]:
        with self._lock:
            for record in self._keys.values():
                if record.agent_id == agent_id and record.status == "active":
                    return record
        return None

    # ------------------------------------------------------------------ #
    # Queries                                                            #
    # ------------------------------------------------------------------ #

    def get_key(self, key_id: str) -> Optional[KeyRecord]:
        with self._lock:
            return self._keys.get(key_id)

    def list_keys(self) -> List[KeyRecord]:
        with self._lock:
            return list(self._keys.values())

    @property
    def audit_log(self) -> AuditLog:
        return self._audit

    def get_audit_log(self, key_id: Optional[str] = None, limit: Optional[int] = 100) -> List[AuditEntry]:
        return self._audit.query(key_id=key_id, limit=limit)

    def get_stats(self) -> StoreStats:
        keys = self.list_keys()
        sign_entries = [e for e in self._audit.entries() if e.operation == "sign" and e.success]
        avg_latency = (
            round(sum(e.latency_ms for e in sign_entries) / len(sign_entries), 3) if sign_entries else 0.0
        )
        return StoreStats(
            total_keys=len(keys),
            active_keys=sum(1 for k in keys if k.status == "active"),
            retired_keys=sum(1 for k in keys if k.status == "retired"),
            total_sign_operations=sum(k.sign_count for k in keys),
            avg_sign_latency_ms=avg_latency,
            audit_entries=len(self._audit),
        )

    def get_cost_estimate(self) -> CostEstimate:
        """
        Informational monthly cost: per-key storage for every non-retired key
        plus signing volume extrapolated to 30 days.
        """
        keys = self.list_keys()
        live = sum(1 for k in keys if k.status != "retired")
        total_signs = sum(k.sign_count for k in keys)
        monthly_signs = total_signs * 30

        key_cost = self._settings.key_monthly_cost
        sign_cost = self._settings.sign_cost_per_10k
        storage = live * key_cost
        signing = (monthly_signs / 10_000) * sign_cost
        return CostEstimate(
            monthly_key_storage=round(storage, 2),
            monthly_signing_estimate=round(signing, 2),
            total_monthly_estimate=round(storage + signing, 2),
            details=(
                f"{live} active keys x ${key_cost:.2f}/mo + "
                f"~{monthly_signs} signs x ${sign_cost / 10:.3f}/1K"
            ),
        )


__all__ = [
    "KeyStatus",
    "Signer",
    "KeyInfo",
    "KeyRecord",
    "SignResult",
    "StoreStats",
    "CostEstimate",
    "KeyRecordStore",
]
