# keyforge/config.py
from __future__ import annotations

import logging
import os
import threading
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict

from .policy import RotationPolicy
from .utils import MS_PER_DAY, blake2s_hex


_log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Env helpers
# ---------------------------------------------------------------------------


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    v = raw.strip().lower()
    return v in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        _log.warning("ignoring non-numeric %s=%r", name, raw)
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        _log.warning("ignoring non-integer %s=%r", name, raw)
        return default


def _load_yaml_mapping(path: str) -> Dict[str, Any]:
    """
    Load a simple top-level mapping from YAML.

    Missing paths yield an empty mapping; a file that exists but is not a
    mapping is rejected.
    """
    if not path or not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        doc = yaml.safe_load(f)
    if doc is None:
        return {}
    if not isinstance(doc, dict):
        raise ValueError(f"config file {path} must contain a mapping at top level")
    return {str(k): v for k, v in doc.items()}


# ---------------------------------------------------------------------------
# Settings model
# ---------------------------------------------------------------------------


class Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    # --- Identity ---------------------------------------------------------

    region: str = "us-east-1"
    # Default "Project" tag attached to keys created without explicit tags.
    project_tag: str = "keyforge"

    # Indicates how this config reached the process (defaults/yaml/env).
    config_origin: str = "defaults"

    # --- Default rotation policy -------------------------------------------

    rotation_max_age_days: float = 90.0
    rotation_max_sign_count: int = 100_000
    rotation_enabled: bool = True

    # --- Audit -------------------------------------------------------------

    audit_max_entries: int = 100_000
    # Mirror every audit entry to the "keyforge.audit.events" logger.
    audit_log_events: bool = False

    # --- Compliance / cost -------------------------------------------------

    compliance_max_key_age_days: float = 180.0
    key_monthly_cost: float = 1.00
    sign_cost_per_10k: float = 0.15

    # --- Observability -----------------------------------------------------

    log_level: str = "INFO"
    metrics_enabled: bool = True

    def rotation_policy(self) -> RotationPolicy:
        return RotationPolicy(
            max_age_ms=self.rotation_max_age_days * MS_PER_DAY,
            max_sign_count=self.rotation_max_sign_count,
            enabled=self.rotation_enabled,
        )

    def config_hash(self) -> str:
        """Stable digest of the current settings, safe to log."""
        payload = self.model_dump(mode="json")
        payload.pop("config_origin", None)
        return blake2s_hex(payload, digest_size=16, domain="keyforge:settings")


# ---------------------------------------------------------------------------
# Loading / merging
# ---------------------------------------------------------------------------


def load_settings() -> Settings:
    """
    Load Settings from defaults, optional YAML, and environment variables.

    Priority:
      1. Settings defaults (in-code).
      2. YAML file pointed to by KEYFORGE_CONFIG_PATH.
      3. Environment variables (KEYFORGE_*), with bounds checks; out of
         range values are ignored.
    """
    merged: Dict[str, Any] = Settings().model_dump()
    origin = "defaults"

    yaml_path = os.environ.get("KEYFORGE_CONFIG_PATH", "").strip()
    yaml_doc = _load_yaml_mapping(yaml_path)
    if yaml_doc:
        merged.update(yaml_doc)
        # validate early so a bad file names itself in the error
        merged = Settings(**merged).model_dump()
        origin = "yaml"

    env_seen = False

    def _override(key: str, value: Any) -> None:
        nonlocal env_seen
        if value != merged[key]:
            merged[key] = value
            env_seen = True

    _override("region", os.environ.get("KEYFORGE_REGION", merged["region"]).strip() or merged["region"])
    _override("project_tag", os.environ.get("KEYFORGE_PROJECT_TAG", merged["project_tag"]))

    age_days = _env_float("KEYFORGE_ROTATION_MAX_AGE_DAYS", merged["rotation_max_age_days"])
    if age_days > 0.0:
        _override("rotation_max_age_days", age_days)

    max_signs = _env_int("KEYFORGE_ROTATION_MAX_SIGN_COUNT", merged["rotation_max_sign_count"])
    if max_signs >= 0:
        _override("rotation_max_sign_count", max_signs)

    _override("rotation_enabled", _env_bool("KEYFORGE_ROTATION_ENABLED", merged["rotation_enabled"]))

    audit_max = _env_int("KEYFORGE_AUDIT_MAX_ENTRIES", merged["audit_max_entries"])
    if audit_max > 0:
        _override("audit_max_entries", audit_max)
    _override("audit_log_events", _env_bool("KEYFORGE_AUDIT_LOG_EVENTS", merged["audit_log_events"]))

    compliance_age = _env_float("KEYFORGE_COMPLIANCE_MAX_KEY_AGE_DAYS", merged["compliance_max_key_age_days"])
    if compliance_age > 0.0:
        _override("compliance_max_key_age_days", compliance_age)

    key_cost = _env_float("KEYFORGE_KEY_MONTHLY_COST", merged["key_monthly_cost"])
    if key_cost >= 0.0:
        _override("key_monthly_cost", key_cost)
    sign_cost = _env_float("KEYFORGE_SIGN_COST_PER_10K", merged["sign_cost_per_10k"])
    if sign_cost >= 0.0:
        _override("sign_cost_per_10k", sign_cost)

    _override("log_level", os.environ.get("KEYFORGE_LOG_LEVEL", merged["log_level"]).upper())
    _override("metrics_enabled", _env_bool("KEYFORGE_METRICS_ENABLED", merged["metrics_enabled"]))

    if env_seen:
        origin = "env" if origin == "defaults" else f"{origin}+env"
    merged["config_origin"] = origin
    return Settings(**merged)


_DEFAULT_SETTINGS: Optional[Settings] = None
_SETTINGS_LOCK = threading.RLock()


def get_settings() -> Settings:
    global _DEFAULT_SETTINGS
    if _DEFAULT_SETTINGS is not None:
        return _DEFAULT_SETTINGS
    with _SETTINGS_LOCK:
        if _DEFAULT_SETTINGS is None:
            _DEFAULT_SETTINGS = load_settings()
            _log.info(
                "keyforge settings loaded origin=%s hash=%s",
                _DEFAULT_SETTINGS.config_origin,
                _DEFAULT_SETTINGS.config_hash(),
            )
    return _DEFAULT_SETTINGS


def reload_settings() -> Settings:
    global _DEFAULT_SETTINGS
    with _SETTINGS_LOCK:
        _DEFAULT_SETTINGS = load_settings()
        return _DEFAULT_SETTINGS


__all__ = ["Settings", "load_settings", "get_settings", "reload_settings"]
