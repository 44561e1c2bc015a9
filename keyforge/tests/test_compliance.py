# keyforge/tests/test_compliance.py
import pytest

from keyforge.compliance import BOOTSTRAP_RECOMMENDATION
from keyforge.errors import QuotaExceededError
from keyforge.manager import MultiKeyManager
from keyforge.policy import RotationPolicy
from keyforge.utils import MS_PER_DAY


@pytest.fixture
def manager(backend, settings, clock):
    return MultiKeyManager(backend, settings=settings, clock=clock)


def test_empty_report(manager, clock):
    report = manager.generate_compliance_report()
    assert report.total_keys == 0
    assert report.oldest_key_age_ms == 0.0
    assert report.average_key_age_ms == 0.0
    assert report.total_sign_operations == 0
    assert report.recommendations == [BOOTSTRAP_RECOMMENDATION]
    assert report.generated_at == clock.now


def test_report_counts_and_recommendations(manager, clock):
    a = manager.create_key(rotation_policy=RotationPolicy(max_sign_count=1))
    manager.create_key(rotation_policy=RotationPolicy(enabled=False))
    b = manager.create_key()
    manager.set_quota(b.key_id, 0)
    for _ in range(2):
        manager.sign(a.key_id, b"m")
    with pytest.raises(QuotaExceededError):
        manager.sign(b.key_id, b"m")

    clock.advance(10 * 86400)
    report = manager.generate_compliance_report()
    assert report.total_keys == 3
    assert report.keys_with_rotation_policy == 2
    assert report.keys_overdue_for_rotation == 1
    assert report.keys_exceeding_quota == 1
    assert report.total_sign_operations == 2
    assert report.oldest_key_age_ms == 10 * MS_PER_DAY
    assert report.average_key_age_ms == 10 * MS_PER_DAY
    assert report.recommendations == [
        "1 key(s) overdue for rotation: run auto_rotate()",
        "1 key(s) have no rotation policy",
        "1 key(s) exceeded usage quota",
    ]


def test_old_key_recommendation(manager, clock):
    manager.create_key(rotation_policy=RotationPolicy(enabled=False))
    clock.advance(181 * 86400)
    report = manager.generate_compliance_report()
    assert "Oldest key exceeds 180 days: consider rotation" in report.recommendations
    # disabled policy means the key is not overdue, only unmanaged
    assert report.keys_overdue_for_rotation == 0


def test_ages_ignore_retired_keys(manager, clock):
    old = manager.create_key()
    clock.advance(100)
    manager.rotate_key(old.key_id)
    clock.advance(100)
    report = manager.generate_compliance_report()
    assert report.oldest_key_age_ms == 100_000.0
    assert report.total_keys == 2


def test_report_to_dict(manager):
    d = manager.generate_compliance_report().to_dict()
    assert d["total_keys"] == 0
    assert d["generated_at"].endswith("Z")
    assert manager.get_status().to_dict()["last_audit_at"].endswith("Z")
