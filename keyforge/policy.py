from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import Any, Dict, Literal, Optional, Tuple

from .errors import QuotaExceededError
from .utils import MS_PER_DAY, MS_PER_HOUR, MS_PER_SECOND, iso_utc

KeyPurpose = Literal["agent-signing", "topic-submit", "identity", "payment", "backup"]

KEY_PURPOSES: Tuple[str, ...] = ("agent-signing", "topic-submit", "identity", "payment", "backup")

QUOTA_WINDOW_S = MS_PER_HOUR / MS_PER_SECOND


# ---------------------------------------------------------------------------
# Derivation paths
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class DerivationPath:
    """
    Logical hierarchical name for a key: purpose / agent / index.

    This is a naming scheme only; no key material is derived from it.
    """

    purpose: KeyPurpose
    agent_id: str
    index: int = 0

    def __post_init__(self) -> None:
        if self.purpose not in KEY_PURPOSES:
            raise ValueError(f"Unknown key purpose: {self.purpose!r}")
        if self.index < 0:
            raise ValueError("Derivation index must be non-negative")

    def next(self) -> "DerivationPath":
        return dataclasses.replace(self, index=self.index + 1)

    def __str__(self) -> str:
        return f"{self.purpose}/{self.agent_id}/{self.index}"

    def to_dict(self) -> Dict[str, Any]:
        return {"purpose": self.purpose, "agent_id": self.agent_id, "index": self.index}


# ---------------------------------------------------------------------------
# Rotation policy
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RotationPolicy:
    max_age_ms: float = 90 * MS_PER_DAY
    max_sign_count: int = 100_000
    enabled: bool = True

    def age_exceeded(self, age_ms: float) -> bool:
        return age_ms > self.max_age_ms

    def sign_count_exceeded(self, sign_count: int) -> bool:
        return sign_count > self.max_sign_count

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_age_ms": self.max_age_ms,
            "max_sign_count": self.max_sign_count,
            "enabled": self.enabled,
        }


# ---------------------------------------------------------------------------
# Usage quota
# ---------------------------------------------------------------------------


@dataclass
class UsageQuota:
    """
    Fixed hourly sign budget for a key.

    The window is not sliding: it restarts at the first check made more than
    an hour after hour_started_at.
    """

    key_id: str
    max_signs_per_hour: int
    current_hour_signs: int = 0
    hour_started_at: float = 0.0
    exceeded: bool = False

    def _roll_window(self, now: float) -> None:
        if now - self.hour_started_at > QUOTA_WINDOW_S:
            self.current_hour_signs = 0
            self.exceeded = False
            self.hour_started_at = now

    def check(self, now: float) -> None:
        self._roll_window(now)
        if self.current_hour_signs >= self.max_signs_per_hour:
            self.exceeded = True
            raise QuotaExceededError(
                f"Quota exceeded for key {self.key_id}: "
                f"{self.current_hour_signs}/{self.max_signs_per_hour} signs/hour"
            )

    def record(self) -> None:
        self.current_hour_signs += 1

    def remaining(self, now: Optional[float] = None) -> int:
        if now is not None and now - self.hour_started_at > QUOTA_WINDOW_S:
            return self.max_signs_per_hour
        return max(0, self.max_signs_per_hour - self.current_hour_signs)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key_id": self.key_id,
            "max_signs_per_hour": self.max_signs_per_hour,
            "current_hour_signs": self.current_hour_signs,
            "hour_started_at": iso_utc(self.hour_started_at),
            "exceeded": self.exceeded,
        }


__all__ = [
    "KeyPurpose",
    "KEY_PURPOSES",
    "QUOTA_WINDOW_S",
    "DerivationPath",
    "RotationPolicy",
    "UsageQuota",
]
