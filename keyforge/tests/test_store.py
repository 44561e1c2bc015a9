# keyforge/tests/test_store.py
import hashlib

import pytest

from keyforge.config import Settings
from keyforge.crypto import KeySpec
from keyforge.errors import BackendUnavailableError, KeyRetiredError, NotFoundError
from keyforge.store import KeyRecordStore


@pytest.fixture
def store(flaky, settings, clock):
    return KeyRecordStore(flaky, settings=settings, clock=clock)


def test_create_key_registers_active_record(store, clock):
    info = store.create_key(KeySpec.ED25519)
    assert len(info.public_key) == 32
    assert info.public_key_hex == info.public_key.hex()
    assert info.created_at == pytest.approx(clock.now)
    assert store.region == "us-west-2"

    record = store.get_key(info.key_id)
    assert record.status == "active"
    assert record.sign_count == 0
    assert record.tags == {"Project": "keyforge"}
    assert record.description == "Managed signing key (ECC_NIST_EDWARDS25519)"

    [entry] = store.get_audit_log(info.key_id)
    assert (entry.operation, entry.success) == ("create_key", True)


def test_create_key_failure_is_audited_and_not_registered(store, flaky):
    flaky.fail_next("create_key")
    with pytest.raises(BackendUnavailableError):
        store.create_key(KeySpec.ED25519)
    assert store.list_keys() == []
    [entry] = store.get_audit_log()
    assert entry.success is False
    assert entry.key_id == "unknown"
    assert "connection reset" in entry.error


def test_foreign_backend_errors_are_wrapped(store, flaky):
    flaky.fail_next("get_public_key", error=TimeoutError("timed out"))
    with pytest.raises(BackendUnavailableError) as ei:
        store.create_key(KeySpec.SECP256K1)
    assert isinstance(ei.value.__cause__, TimeoutError)


def test_sign_counts_only_successes(store, flaky, backend):
    info = store.create_key(KeySpec.ED25519)
    for _ in range(3):
        result = store.sign(info.key_id, b"payload", tx_hash="0x01")
        assert backend.verify(info.key_id, b"payload", result.signature)
        assert result.algorithm == "ED25519_SHA_512"

    flaky.fail_next("sign")
    with pytest.raises(BackendUnavailableError):
        store.sign(info.key_id, b"payload")

    record = store.get_key(info.key_id)
    assert record.sign_count == 3
    signs = [e for e in store.get_audit_log(info.key_id) if e.operation == "sign"]
    assert [e.success for e in signs] == [True, True, True, False]
    assert signs[0].tx_hash == "0x01"


def test_secp256k1_signs_sha256_digest(store, backend):
    info = store.create_key(KeySpec.SECP256K1)
    assert len(info.public_key) == 65
    result = store.sign(info.key_id, b"tx-bytes")
    assert result.algorithm == "ECDSA_SHA_256"
    digest = hashlib.sha256(b"tx-bytes").digest()
    assert backend.verify(info.key_id, digest, result.signature, message_type="DIGEST")


def test_unknown_key(store):
    with pytest.raises(NotFoundError, match="not found in manager"):
        store.sign("nope", b"x")
    with pytest.raises(NotFoundError):
        store.get_signer("nope")


def test_get_public_key_refetches(store):
    info = store.create_key(KeySpec.ED25519)
    assert store.get_public_key(info.key_id) == info.public_key
    ops = [e.operation for e in store.get_audit_log(info.key_id)]
    assert ops == ["create_key", "get_public_key"]


def test_rotate_retires_old_and_links_new(store, clock):
    info = store.create_key(KeySpec.ED25519, agent_id="agent-7")
    clock.advance(60)
    new = store.rotate_key(info.key_id)

    old_rec = store.get_key(info.key_id)
    new_rec = store.get_key(new.key_id)
    assert old_rec.status == "retired"
    assert old_rec.retired_at == clock.now
    assert new_rec.status == "active"
    assert new_rec.rotated_from == info.key_id
    assert new_rec.agent_id == "agent-7"
    assert new_rec.tags == {"RotatedFrom": info.key_id, "AgentId": "agent-7"}
    assert new_rec.description == f"Rotated from {info.key_id}"
    assert store.get_key_for_agent("agent-7").key_id == new.key_id

    with pytest.raises(KeyRetiredError):
        store.sign(info.key_id, b"x")
    with pytest.raises(KeyRetiredError):
        store.rotate_key(info.key_id)

    rotations = [e for e in store.get_audit_log(info.key_id) if e.operation == "rotate_key"]
    assert len(rotations) == 1 and rotations[0].success


def test_failed_rotation_reverts_to_active(store, flaky):
    info = store.create_key(KeySpec.ED25519)
    flaky.fail_next("create_key")
    with pytest.raises(BackendUnavailableError):
        store.rotate_key(info.key_id)
    assert store.get_key(info.key_id).status == "active"
    store.sign(info.key_id, b"still usable")


def test_signer_checks_status_per_call(store):
    info = store.create_key(KeySpec.ED25519)
    signer = store.get_signer(info.key_id)
    assert len(signer(b"a")) == 64
    store.rotate_key(info.key_id)
    with pytest.raises(KeyRetiredError):
        signer(b"b")


def test_set_agent_id(store):
    info = store.create_key(KeySpec.ED25519)
    store.set_agent_id(info.key_id, "agent-1")
    assert store.get_key_for_agent("agent-1").key_id == info.key_id
    assert store.get_key_for_agent("agent-2") is None
    with pytest.raises(NotFoundError):
        store.set_agent_id("missing", "agent-1")


def test_stats_and_cost(store):
    a = store.create_key(KeySpec.ED25519)
    store.create_key(KeySpec.SECP256K1)
    for _ in range(4):
        store.sign(a.key_id, b"m")
    store.rotate_key(a.key_id)

    stats = store.get_stats()
    assert stats.total_keys == 3
    assert stats.active_keys == 2
    assert stats.retired_keys == 1
    assert stats.total_sign_operations == 4
    assert stats.avg_sign_latency_ms >= 0.0
    assert stats.audit_entries == len(store.audit_log)

    cost = store.get_cost_estimate()
    assert cost.monthly_key_storage == 2.00
    # 4 signs * 30 = 120 per month
    assert cost.monthly_signing_estimate == round(120 / 10_000 * 0.15, 2)
    assert cost.total_monthly_estimate == round(2.0 + 120 / 10_000 * 0.15, 2)
    assert cost.details == "2 active keys x $1.00/mo + ~120 signs x $0.015/1K"


def test_audit_events_mirrored_to_logger(flaky, clock, caplog):
    store = KeyRecordStore(flaky, settings=Settings(audit_log_events=True), clock=clock)
    with caplog.at_level("INFO", logger="keyforge.audit.events"):
        info = store.create_key(KeySpec.ED25519)
    [rec] = [r for r in caplog.records if r.name == "keyforge.audit.events"]
    assert rec.audit["key_id"] == info.key_id
    assert rec.audit["operation"] == "create_key"
