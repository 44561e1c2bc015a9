# keyforge/tests/test_metrics.py
import pytest
from prometheus_client import REGISTRY

from keyforge import metrics
from keyforge.config import Settings
from keyforge.errors import QuotaExceededError
from keyforge.manager import MultiKeyManager


def _value(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.fixture
def manager(backend, clock):
    return MultiKeyManager(backend, settings=Settings(region="us-west-2", metrics_enabled=True), clock=clock)


def test_operations_and_rotations_are_counted(manager):
    created = _value("keyforge_key_operation_total", operation="create_key", ok="1")
    signed = _value("keyforge_key_operation_total", operation="sign", ok="1")
    rotated = _value("keyforge_rotation_total", trigger="manual", ok="1")

    info = manager.create_key()
    manager.sign(info.key_id, b"m")
    manager.rotate_key(info.key_id)

    # rotation creates a second key
    assert _value("keyforge_key_operation_total", operation="create_key", ok="1") == created + 2
    assert _value("keyforge_key_operation_total", operation="sign", ok="1") == signed + 1
    assert _value("keyforge_rotation_total", trigger="manual", ok="1") == rotated + 1


def test_quota_rejections_are_counted(manager):
    before = _value("keyforge_quota_rejected_total")
    info = manager.create_key()
    manager.set_quota(info.key_id, 0)
    with pytest.raises(QuotaExceededError):
        manager.sign(info.key_id, b"m")
    assert _value("keyforge_quota_rejected_total") == before + 1


def test_disabled_metrics_do_not_move(manager):
    metrics.set_enabled(False)
    before = _value("keyforge_key_operation_total", operation="create_key", ok="1")
    manager.create_key()
    assert _value("keyforge_key_operation_total", operation="create_key", ok="1") == before


def test_settings_switch_metrics(backend, clock):
    metrics.set_enabled(True)
    MultiKeyManager(backend, settings=Settings(metrics_enabled=False), clock=clock)
    assert metrics.enabled() is False
    MultiKeyManager(backend, settings=Settings(metrics_enabled=True), clock=clock)
    assert metrics.enabled() is True
