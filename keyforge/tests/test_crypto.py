# keyforge/tests/test_crypto.py
import hashlib
import os

import pytest

from keyforge.crypto import (
    ED25519_SPKI_HEADER,
    SECP256K1_SPKI_HEADER,
    KeySpec,
    build_spki_der,
    extract_public_key_from_der,
    public_key_hex,
    signing_params,
)
from keyforge.errors import InvalidEncodingError, UnsupportedKeySpecError


def test_keyspec_parse_accepts_value_and_name():
    assert KeySpec.parse("ECC_NIST_EDWARDS25519") is KeySpec.ED25519
    assert KeySpec.parse("secp256k1") is KeySpec.SECP256K1
    assert KeySpec.parse(KeySpec.SECP256K1) is KeySpec.SECP256K1
    with pytest.raises(UnsupportedKeySpecError):
        KeySpec.parse("RSA_2048")


def test_ed25519_standard_spki_returns_trailing_32_bytes():
    raw = os.urandom(32)
    der = ED25519_SPKI_HEADER + raw
    assert len(der) == 44
    assert extract_public_key_from_der(der, KeySpec.ED25519) == raw


def test_ed25519_bad_header_rejected():
    der = bytearray(ED25519_SPKI_HEADER + os.urandom(32))
    der[0] = 0x31
    with pytest.raises(InvalidEncodingError, match="bad SEQUENCE headers"):
        extract_public_key_from_der(bytes(der), KeySpec.ED25519)


@pytest.mark.parametrize("length", [32, 33, 43, 45, 64])
def test_ed25519_non_standard_length_takes_tail(length):
    buf = os.urandom(length)
    assert extract_public_key_from_der(buf, KeySpec.ED25519) == buf[-32:]


def test_ed25519_too_short():
    with pytest.raises(InvalidEncodingError, match="too short"):
        extract_public_key_from_der(b"\x00" * 31, KeySpec.ED25519)


def test_secp256k1_uncompressed_point():
    point = b"\x04" + os.urandom(64)
    der = SECP256K1_SPKI_HEADER + point
    assert len(der) == 88
    assert extract_public_key_from_der(der, KeySpec.SECP256K1) == point


def test_secp256k1_compressed_point():
    point = b"\x02" + os.urandom(32)
    der = build_spki_der(point, KeySpec.SECP256K1)
    assert extract_public_key_from_der(der, KeySpec.SECP256K1) == point


def test_secp256k1_selection_is_by_length_only(caplog):
    # 65-byte tail with a compressed prefix is still returned as-is
    buf = b"\x00" * 10 + b"\x02" + os.urandom(64)
    with caplog.at_level("WARNING", logger="keyforge.crypto"):
        out = extract_public_key_from_der(buf, KeySpec.SECP256K1)
    assert out == buf[-65:]
    assert any("prefix" in r.getMessage() for r in caplog.records)


def test_secp256k1_too_short():
    with pytest.raises(InvalidEncodingError):
        extract_public_key_from_der(b"\x02" * 32, KeySpec.SECP256K1)


def test_build_spki_der_rejects_wrong_length():
    with pytest.raises(InvalidEncodingError):
        build_spki_der(b"\x00" * 31, KeySpec.ED25519)
    with pytest.raises(InvalidEncodingError):
        build_spki_der(b"\x04" * 40, KeySpec.SECP256K1)


def test_public_key_hex_is_lowercase():
    assert public_key_hex(b"\xab\x01") == "ab01"


def test_signing_params_per_spec():
    ed = signing_params(KeySpec.ED25519)
    assert (ed.algorithm, ed.message_type) == ("ED25519_SHA_512", "RAW")
    assert ed.prepare(b"hello") == b"hello"

    ec = signing_params("ECC_SECG_P256K1")
    assert (ec.algorithm, ec.message_type) == ("ECDSA_SHA_256", "DIGEST")
    assert ec.prepare(b"hello") == hashlib.sha256(b"hello").digest()
