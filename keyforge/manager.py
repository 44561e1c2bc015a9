from __future__ import annotations

import dataclasses
import logging
import threading
from contextlib import nullcontext
from dataclasses import dataclass, field
from typing import Any, ContextManager, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from . import metrics
from .audit import AuditEntry
from .backend import KeyBackend
from .compliance import ComplianceReport, ManagerStatus, build_compliance_report, build_status
from .config import Settings, get_settings
from .crypto import KeySpec
from .logging import log_context
from .errors import (
    AliasNotFoundError,
    KeyManagementError,
    KeyRetiredError,
    NotFoundError,
    NotManagedError,
    QuotaExceededError,
)
from .policy import DerivationPath, KeyPurpose, RotationPolicy, UsageQuota
from .store import KeyInfo, KeyRecord, KeyRecordStore, Signer, SignResult
from .utils import MS_PER_DAY, MS_PER_SECOND, Clock, system_clock

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Core types
# ---------------------------------------------------------------------------


@dataclass
class ManagedKeyEntry:
    """
    Identity-level view of a key: its record plus naming, policy and tags.

    Entries are never removed; a rotated-out entry keeps its record (now
    retired) and loses its aliases to the successor.
    """

    record: KeyRecord
    region: str
    derivation_path: Optional[DerivationPath] = None
    rotation_policy: Optional[RotationPolicy] = None
    aliases: List[str] = field(default_factory=list)
    metadata: Dict[str, str] = field(default_factory=dict)

    @property
    def key_id(self) -> str:
        return self.record.key_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.record.to_dict(),
            "region": self.region,
            "derivation_path": self.derivation_path.to_dict() if self.derivation_path else None,
            "rotation_policy": self.rotation_policy.to_dict() if self.rotation_policy else None,
            "aliases": list(self.aliases),
            "metadata": dict(self.metadata),
        }


@dataclass(frozen=True)
class RotationCandidate:
    """A key due for rotation. Each key appears at most once, with every reason that applies."""

    key_id: str
    reasons: Tuple[str, ...]

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons)


@dataclass(frozen=True)
class RotationOutcome:
    old_key_id: str
    new_key_id: str
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        return {"old_key_id": self.old_key_id, "new_key_id": self.new_key_id, "reason": self.reason}


# ---------------------------------------------------------------------------
# MultiKeyManager
# ---------------------------------------------------------------------------


class MultiKeyManager:
    """
    Multi-key orchestration on top of a KeyRecordStore.

    Adds aliases, purpose/agent derivation paths, rotation policies, hourly
    usage quotas and compliance reporting. The manager owns identity-level
    metadata; per-key signing state stays in the store.

    Locking: the map lock guards entries, aliases and quotas. Per-key locks
    serialize quota check -> sign -> quota increment and rotation for a key;
    per-(purpose, agent) locks serialize index allocation. Manager locks are
    always taken before store locks.
    """

    def __init__(
        self,
        backend: KeyBackend,
        region: Optional[str] = None,
        default_rotation_policy: Union[RotationPolicy, Mapping[str, Any], None] = None,
        *,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
        key_store: Optional[KeyRecordStore] = None,
    ) -> None:
        self._settings = settings or get_settings()
        self.region = region or self._settings.region
        self._clock = clock or system_clock
        self._store = key_store or KeyRecordStore(
            backend,
            region=self.region,
            settings=self._settings,
            clock=self._clock,
        )

        base_policy = self._settings.rotation_policy()
        if isinstance(default_rotation_policy, RotationPolicy):
            self._default_policy = default_rotation_policy
        elif default_rotation_policy:
            self._default_policy = dataclasses.replace(base_policy, **dict(default_rotation_policy))
        else:
            self._default_policy = base_policy

        self._lock = threading.RLock()
        self._entries: Dict[str, ManagedKeyEntry] = {}
        self._aliases: Dict[str, str] = {}
        self._quotas: Dict[str, UsageQuota] = {}
        self._key_locks: Dict[str, threading.Lock] = {}
        self._path_locks: Dict[Tuple[str, str], threading.Lock] = {}

    # ------------------------------------------------------------------ #
    # Internal helpers                                                   #
    # ------------------------------------------------------------------ #

    def _key_lock(self, key_id: str) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(key_id)
            if lock is None:
                if self._store.get_key(key_id) is None:
                    raise NotFoundError(f"Key {key_id} not found in manager")
                lock = self._key_locks[key_id] = threading.Lock()
            return lock

    def _store_record(self, key_id: str) -> KeyRecord:
        record = self._store.get_key(key_id)
        if record is None:
            raise NotFoundError(f"Key {key_id} not found in manager")
        return record

    def _path_lock(self, path: Optional[DerivationPath]) -> ContextManager[Any]:
        if path is None:
            return nullcontext()
        pair = (path.purpose, path.agent_id)
        with self._lock:
            lock = self._path_locks.get(pair)
            if lock is None:
                lock = self._path_locks[pair] = threading.Lock()
            return lock

    def _next_index(self, purpose: str, agent_id: str) -> int:
        # Indices per pair are dense, so this equals the number of entries
        # already holding the pair.
        with self._lock:
            used = [
                e.derivation_path.index
                for e in self._entries.values()
                if e.derivation_path is not None
                and e.derivation_path.purpose == purpose
                and e.derivation_path.agent_id == agent_id
            ]
        return max(used) + 1 if used else 0

    def _index_taken(self, path: DerivationPath) -> bool:
        with self._lock:
            return any(
                e.derivation_path is not None
                and e.derivation_path.purpose == path.purpose
                and e.derivation_path.agent_id == path.agent_id
                and e.derivation_path.index == path.index
                for e in self._entries.values()
            )

    def _register_alias(self, alias: str, entry: ManagedKeyEntry) -> None:
        """Bind alias -> entry, last write wins. Caller holds the map lock."""
        previous = self._aliases.get(alias)
        if previous is not None and previous != entry.key_id:
            prev_entry = self._entries.get(previous)
            if prev_entry is not None and alias in prev_entry.aliases:
                prev_entry.aliases.remove(alias)
            logger.warning(
                "alias %r moved from key %s to key %s",
                alias,
                previous,
                entry.key_id,
                extra={"alias": alias, "key_id": entry.key_id},
            )
        self._aliases[alias] = entry.key_id
        if alias not in entry.aliases:
            entry.aliases.append(alias)

    # ------------------------------------------------------------------ #
    # Creation                                                           #
    # ------------------------------------------------------------------ #

    def create_key(
        self,
        key_spec: Union[KeySpec, str] = KeySpec.ED25519,
        *,
        derivation_path: Optional[DerivationPath] = None,
        rotation_policy: Optional[RotationPolicy] = None,
        aliases: Optional[Iterable[str]] = None,
        metadata: Optional[Mapping[str, str]] = None,
        description: Optional[str] = None,
    ) -> KeyInfo:
        """
        Create a managed key.

        Aliases already bound to another key are moved to the new key (last
        write wins). An explicit derivation path must not reuse an index
        already held for its (purpose, agent) pair.
        """
        with self._path_lock(derivation_path):
            if derivation_path is not None and self._index_taken(derivation_path):
                raise ValueError(f"Derivation path {derivation_path} is already in use")
            return self._create_entry(
                key_spec,
                derivation_path=derivation_path,
                rotation_policy=rotation_policy,
                aliases=aliases,
                metadata=metadata,
                description=description,
            )

    def _create_entry(
        self,
        key_spec: Union[KeySpec, str],
        *,
        derivation_path: Optional[DerivationPath],
        rotation_policy: Optional[RotationPolicy],
        aliases: Optional[Iterable[str]],
        metadata: Optional[Mapping[str, str]],
        description: Optional[str],
    ) -> KeyInfo:
        desc = description or (str(derivation_path) if derivation_path is not None else None)
        info = self._store.create_key(
            key_spec,
            description=desc,
            agent_id=derivation_path.agent_id if derivation_path is not None else None,
        )
        record = self._store_record(info.key_id)

        entry = ManagedKeyEntry(
            record=record,
            region=self.region,
            derivation_path=derivation_path,
            rotation_policy=rotation_policy or self._default_policy,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._entries[info.key_id] = entry
            self._key_locks[info.key_id] = threading.Lock()
            for alias in aliases or ():
                self._register_alias(alias, entry)
        return info

    def create_derived_key(
        self,
        purpose: KeyPurpose,
        agent_id: str,
        key_spec: Union[KeySpec, str] = KeySpec.ED25519,
    ) -> KeyInfo:
        """
        Create the next key on the ``purpose/agent_id`` path.

        The index is the next unused one for the pair and the key is aliased
        as ``"{purpose}/{agent_id}/{index}"``.
        """
        probe = DerivationPath(purpose=purpose, agent_id=agent_id)
        with self._path_lock(probe):
            index = self._next_index(purpose, agent_id)
            path = dataclasses.replace(probe, index=index)
            return self._create_entry(
                key_spec,
                derivation_path=path,
                rotation_policy=None,
                aliases=[str(path)],
                metadata={"purpose": purpose, "agentId": agent_id, "index": str(index)},
                description=None,
            )

    # ------------------------------------------------------------------ #
    # Aliases                                                            #
    # ------------------------------------------------------------------ #

    def resolve_alias(self, alias: str) -> Optional[str]:
        with self._lock:
            return self._aliases.get(alias)

    def add_alias(self, key_id: str, alias: str) -> None:
        with self._lock:
            entry = self._entries.get(key_id)
            if entry is None:
                raise NotManagedError(f"Key {key_id} not managed by MultiKeyManager")
            if entry.record.status != "active":
                raise KeyRetiredError(f"Key {key_id} is {entry.record.status} and cannot take new aliases")
            self._register_alias(alias, entry)

    def remove_alias(self, alias: str) -> None:
        with self._lock:
            key_id = self._aliases.pop(alias, None)
            if key_id is None:
                raise AliasNotFoundError(f'Key alias "{alias}" not found')
            entry = self._entries.get(key_id)
            if entry is not None and alias in entry.aliases:
                entry.aliases.remove(alias)

    # ------------------------------------------------------------------ #
    # Signing + quotas                                                   #
    # ------------------------------------------------------------------ #

    def _check_quota(self, key_id: str) -> None:
        with self._lock:
            quota = self._quotas.get(key_id)
            if quota is None:
                return
            try:
                quota.check(self._clock())
            except QuotaExceededError as exc:
                metrics.record_quota_rejection()
                logger.warning("%s", exc, extra={"key_id": key_id, "operation": "sign"})
                raise

    def _record_quota(self, key_id: str) -> None:
        with self._lock:
            quota = self._quotas.get(key_id)
            if quota is not None:
                quota.record()

    def sign(self, key_id: str, message: bytes, tx_hash: Optional[str] = None) -> SignResult:
        with self._key_lock(key_id):
            self._check_quota(key_id)
            result = self._store.sign(key_id, message, tx_hash)
            self._record_quota(key_id)
        return result

    def sign_by_alias(self, alias: str, message: bytes, tx_hash: Optional[str] = None) -> SignResult:
        key_id = self.resolve_alias(alias)
        if key_id is None:
            raise AliasNotFoundError(f'Key alias "{alias}" not found')
        return self.sign(key_id, message, tx_hash)

    def get_signer(self, key_id: str) -> Signer:
        """Like KeyRecordStore.get_signer, but every call is quota-checked."""
        self._key_lock(key_id)

        def signer(message: bytes) -> bytes:
            return self.sign(key_id, message).signature

        return signer

    def set_quota(self, key_id: str, max_signs_per_hour: int) -> UsageQuota:
        if max_signs_per_hour < 0:
            raise ValueError("max_signs_per_hour must be >= 0")
        quota = UsageQuota(
            key_id=key_id,
            max_signs_per_hour=int(max_signs_per_hour),
            hour_started_at=self._clock(),
        )
        with self._lock:
            self._quotas[key_id] = quota
        return dataclasses.replace(quota)

    def get_quota(self, key_id: str) -> Optional[UsageQuota]:
        with self._lock:
            quota = self._quotas.get(key_id)
            return dataclasses.replace(quota) if quota is not None else None

    def remove_quota(self, key_id: str) -> None:
        with self._lock:
            self._quotas.pop(key_id, None)

    # ------------------------------------------------------------------ #
    # Rotation                                                           #
    # ------------------------------------------------------------------ #

    def rotate_key(self, key_id: str) -> KeyInfo:
        """
        Rotate a managed key, preserving derivation path, policy, region and
        metadata. All aliases move to the new key in one step.
        """
        return self._rotate(key_id, trigger="manual")

    def _rotate(self, key_id: str, *, trigger: str) -> KeyInfo:
        with self._lock:
            entry = self._entries.get(key_id)
        if entry is None:
            raise NotManagedError(f"Key {key_id} not managed by MultiKeyManager")

        with self._key_lock(key_id), self._path_lock(entry.derivation_path):
            try:
                new_info = self._store.rotate_key(key_id)
            except KeyManagementError:
                metrics.record_rotation(trigger, False)
                raise

            new_record = self._store_record(new_info.key_id)
            new_path = None
            if entry.derivation_path is not None:
                new_path = dataclasses.replace(
                    entry.derivation_path,
                    index=max(
                        entry.derivation_path.index + 1,
                        self._next_index(entry.derivation_path.purpose, entry.derivation_path.agent_id),
                    ),
                )
            new_entry = ManagedKeyEntry(
                record=new_record,
                region=entry.region,
                derivation_path=new_path,
                rotation_policy=entry.rotation_policy,
                metadata={**entry.metadata, "rotatedFrom": key_id},
            )

            with self._lock:
                self._entries[new_info.key_id] = new_entry
                self._key_locks[new_info.key_id] = threading.Lock()
                for alias in entry.aliases:
                    self._aliases[alias] = new_info.key_id
                    new_entry.aliases.append(alias)
                entry.aliases = []

        metrics.record_rotation(trigger, True)
        return new_info

    def get_keys_needing_rotation(self) -> List[RotationCandidate]:
        """
        Active keys with an enabled policy whose age or sign count exceeds
        it. Both conditions are checked; a key is listed once with all of
        its reasons.
        """
        now = self._clock()
        with self._lock:
            entries = list(self._entries.items())

        results: List[RotationCandidate] = []
        for key_id, entry in entries:
            record = entry.record
            policy = entry.rotation_policy
            if record.status != "active" or policy is None or not policy.enabled:
                continue

            reasons: List[str] = []
            age_ms = (now - record.created_at) * MS_PER_SECOND
            if policy.age_exceeded(age_ms):
                reasons.append(
                    f"Key age ({round(age_ms / MS_PER_DAY)}d) exceeds policy "
                    f"({round(policy.max_age_ms / MS_PER_DAY)}d)"
                )
            if policy.sign_count_exceeded(record.sign_count):
                reasons.append(f"Sign count ({record.sign_count}) exceeds policy ({policy.max_sign_count})")
            if reasons:
                results.append(RotationCandidate(key_id=key_id, reasons=tuple(reasons)))
        return results

    def auto_rotate(self) -> List[RotationOutcome]:
        """
        Rotate every key flagged by get_keys_needing_rotation().

        A key whose rotation fails is skipped (it stays active and is picked
        up again on the next run).
        """
        results: List[RotationOutcome] = []
        for candidate in self.get_keys_needing_rotation():
            with log_context(key_id=candidate.key_id, operation="rotate_key", reason=candidate.reason):
                try:
                    new_info = self._rotate(candidate.key_id, trigger="auto")
                except KeyManagementError as exc:
                    logger.warning("auto-rotation skipped: %s", exc)
                    continue
            results.append(
                RotationOutcome(old_key_id=candidate.key_id, new_key_id=new_info.key_id, reason=candidate.reason)
            )
        if results:
            logger.info("auto-rotated %d key(s)", len(results))
        return results

    # ------------------------------------------------------------------ #
    # Queries                                                            #
    # ------------------------------------------------------------------ #

    def get_keys_by_derivation_path(
        self,
        purpose: Optional[KeyPurpose] = None,
        agent_id: Optional[str] = None,
    ) -> List[ManagedKeyEntry]:
        with self._lock:
            entries = list(self._entries.values())
        out: List[ManagedKeyEntry] = []
        for entry in entries:
            path = entry.derivation_path
            if path is None:
                continue
            if purpose is not None and path.purpose != purpose:
                continue
            if agent_id is not None and path.agent_id != agent_id:
                continue
            out.append(entry)
        return out

    def get_agent_keys(self, agent_id: str) -> List[ManagedKeyEntry]:
        """Entries linked to the agent by derivation path or by the record's agent_id."""
        with self._lock:
            entries = list(self._entries.values())
        return [
            e
            for e in entries
            if (e.derivation_path is not None and e.derivation_path.agent_id == agent_id)
            or e.record.agent_id == agent_id
        ]

    def get_entry(self, key_id: str) -> Optional[ManagedKeyEntry]:
        with self._lock:
            return self._entries.get(key_id)

    def list_entries(self) -> List[ManagedKeyEntry]:
        with self._lock:
            return list(self._entries.values())

    @property
    def key_store(self) -> KeyRecordStore:
        return self._store

    @property
    def default_rotation_policy(self) -> RotationPolicy:
        return self._default_policy

    def get_audit_log(self, key_id: Optional[str] = None, limit: Optional[int] = 100) -> List[AuditEntry]:
        return self._store.get_audit_log(key_id, limit)

    # ------------------------------------------------------------------ #
    # Reporting                                                          #
    # ------------------------------------------------------------------ #

    def get_status(self) -> ManagerStatus:
        pending = len(self.get_keys_needing_rotation())
        with self._lock:
            entries = list(self._entries.values())
            quotas = [dataclasses.replace(q) for q in self._quotas.values()]
        return build_status(entries, pending_rotations=pending, quotas=quotas, now=self._clock())

    def generate_compliance_report(self) -> ComplianceReport:
        overdue = self.get_keys_needing_rotation()
        with self._lock:
            entries = list(self._entries.values())
            quotas = [dataclasses.replace(q) for q in self._quotas.values()]
        stats = self._store.get_stats()
        return build_compliance_report(
            entries,
            overdue=overdue,
            quotas=quotas,
            total_sign_operations=stats.total_sign_operations,
            now=self._clock(),
            max_key_age_days=self._settings.compliance_max_key_age_days,
        )


__all__ = [
    "ManagedKeyEntry",
    "RotationCandidate",
    "RotationOutcome",
    "MultiKeyManager",
]
