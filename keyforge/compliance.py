from __future__ import annotations

"""
Point-in-time status and compliance summaries over a managed key
population.

The builders here are pure: MultiKeyManager gathers entries, rotation
candidates and quotas under its lock and hands over snapshots.
"""

from collections import Counter as _Counter
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Sequence

from .policy import UsageQuota
from .utils import MS_PER_DAY, MS_PER_SECOND, iso_utc

if TYPE_CHECKING:  # pragma: no cover
    from .manager import ManagedKeyEntry, RotationCandidate

BOOTSTRAP_RECOMMENDATION = "No keys managed: create keys to get started"


@dataclass(frozen=True)
class ManagerStatus:
    total_managed_keys: int
    active_keys: int
    retired_keys: int
    rotating_keys: int
    keys_by_purpose: Dict[str, int]
    keys_by_region: Dict[str, int]
    pending_rotations: int
    quota_exceeded: int
    last_audit_at: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_managed_keys": self.total_managed_keys,
            "active_keys": self.active_keys,
            "retired_keys": self.retired_keys,
            "rotating_keys": self.rotating_keys,
            "keys_by_purpose": dict(self.keys_by_purpose),
            "keys_by_region": dict(self.keys_by_region),
            "pending_rotations": self.pending_rotations,
            "quota_exceeded": self.quota_exceeded,
            "last_audit_at": iso_utc(self.last_audit_at),
        }


@dataclass(frozen=True)
class ComplianceReport:
    generated_at: float
    total_keys: int
    keys_with_rotation_policy: int
    keys_overdue_for_rotation: int
    keys_exceeding_quota: int
    oldest_key_age_ms: float
    average_key_age_ms: float
    total_sign_operations: int
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "generated_at": iso_utc(self.generated_at),
            "total_keys": self.total_keys,
            "keys_with_rotation_policy": self.keys_with_rotation_policy,
            "keys_overdue_for_rotation": self.keys_overdue_for_rotation,
            "keys_exceeding_quota": self.keys_exceeding_quota,
            "oldest_key_age_ms": self.oldest_key_age_ms,
            "average_key_age_ms": self.average_key_age_ms,
            "total_sign_operations": self.total_sign_operations,
            "recommendations": list(self.recommendations),
        }


def build_status(
    entries: Sequence["ManagedKeyEntry"],
    *,
    pending_rotations: int,
    quotas: Iterable[UsageQuota],
    now: float,
) -> ManagerStatus:
    by_purpose: Dict[str, int] = dict(
        _Counter(e.derivation_path.purpose for e in entries if e.derivation_path is not None)
    )
    by_region: Dict[str, int] = dict(_Counter(e.region for e in entries))
    statuses = _Counter(e.record.status for e in entries)
    return ManagerStatus(
        total_managed_keys=len(entries),
        active_keys=statuses.get("active", 0),
        retired_keys=statuses.get("retired", 0),
        rotating_keys=statuses.get("rotating", 0),
        keys_by_purpose=by_purpose,
        keys_by_region=by_region,
        pending_rotations=pending_rotations,
        quota_exceeded=sum(1 for q in quotas if q.exceeded),
        last_audit_at=now,
    )


def build_compliance_report(
    entries: Sequence["ManagedKeyEntry"],
    *,
    overdue: Sequence["RotationCandidate"],
    quotas: Iterable[UsageQuota],
    total_sign_operations: int,
    now: float,
    max_key_age_days: float = 180.0,
) -> ComplianceReport:
    """
    Summarize rotation and quota posture.

    Recommendation rules are evaluated independently and appended in a fixed
    order: overdue keys, keys without an enabled policy, exceeded quotas,
    oldest active key past ``max_key_age_days``, empty population.
    """
    with_policy = sum(1 for e in entries if e.rotation_policy is not None and e.rotation_policy.enabled)
    exceeded = sum(1 for q in quotas if q.exceeded)

    ages_ms = [
        max(0.0, (now - e.record.created_at) * MS_PER_SECOND)
        for e in entries
        if e.record.status == "active"
    ]
    oldest = max(ages_ms) if ages_ms else 0.0
    average = float(round(sum(ages_ms) / len(ages_ms))) if ages_ms else 0.0

    recommendations: List[str] = []
    if overdue:
        recommendations.append(f"{len(overdue)} key(s) overdue for rotation: run auto_rotate()")
    if entries and with_policy < len(entries):
        recommendations.append(f"{len(entries) - with_policy} key(s) have no rotation policy")
    if exceeded:
        recommendations.append(f"{exceeded} key(s) exceeded usage quota")
    if oldest > max_key_age_days * MS_PER_DAY:
        recommendations.append(f"Oldest key exceeds {max_key_age_days:g} days: consider rotation")
    if not entries:
        recommendations.append(BOOTSTRAP_RECOMMENDATION)

    return ComplianceReport(
        generated_at=now,
        total_keys=len(entries),
        keys_with_rotation_policy=with_policy,
        keys_overdue_for_rotation=len(overdue),
        keys_exceeding_quota=exceeded,
        oldest_key_age_ms=oldest,
        average_key_age_ms=average,
        total_sign_operations=total_sign_operations,
        recommendations=recommendations,
    )


__all__ = [
    "BOOTSTRAP_RECOMMENDATION",
    "ManagerStatus",
    "ComplianceReport",
    "build_status",
    "build_compliance_report",
]
