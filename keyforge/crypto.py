from __future__ import annotations

import binascii
import hashlib
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Literal, Union

from .errors import InvalidEncodingError, UnsupportedKeySpecError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type definitions
# ---------------------------------------------------------------------------

MessageType = Literal["RAW", "DIGEST"]

SigningAlgorithm = Literal["ED25519_SHA_512", "ECDSA_SHA_256"]

KEY_USAGE_SIGN_VERIFY = "SIGN_VERIFY"


class KeySpec(str, Enum):
    """
    Key families supported by the signing backend.

    Values follow the KMS naming so they can be passed to a backend as-is.
    """

    ED25519 = "ECC_NIST_EDWARDS25519"
    SECP256K1 = "ECC_SECG_P256K1"

    @classmethod
    def parse(cls, value: Union["KeySpec", str]) -> "KeySpec":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            raw = value.strip()
            for spec in cls:
                if raw == spec.value or raw.upper() == spec.name:
                    return spec
        raise UnsupportedKeySpecError(f"Unsupported key spec: {value!r}")


# ---------------------------------------------------------------------------
# SPKI DER layouts
# ---------------------------------------------------------------------------

# 30 2a            SEQUENCE (42)
#   30 05          SEQUENCE (AlgorithmIdentifier)
#     06 03 2b6570 OID 1.3.101.112 (id-EdDSA)
#   03 21 00       BIT STRING (33), no unused bits
ED25519_SPKI_HEADER = bytes.fromhex("302a300506032b6570032100")
ED25519_SPKI_LEN = 44
ED25519_RAW_LEN = 32

# 30 56                         SEQUENCE (86)
#   30 10                       SEQUENCE (AlgorithmIdentifier)
#     06 07 2a8648ce3d0201      OID 1.2.840.10045.2.1 (ecPublicKey)
#     06 05 2b8104000a          OID 1.3.132.0.10 (secp256k1)
#   03 42 00                    BIT STRING (66), no unused bits
SECP256K1_SPKI_HEADER = bytes.fromhex("3056301006072a8648ce3d020106052b8104000a034200")
# Same algorithm identifier, 33-byte compressed point.
SECP256K1_COMPRESSED_SPKI_HEADER = bytes.fromhex("3036301006072a8648ce3d020106052b8104000a032200")
SECP256K1_UNCOMPRESSED_LEN = 65
SECP256K1_COMPRESSED_LEN = 33


def _extract_ed25519(der: bytes) -> bytes:
    if len(der) < ED25519_RAW_LEN:
        raise InvalidEncodingError(
            f"Invalid ED25519 SPKI DER: too short (expected >= {ED25519_RAW_LEN} bytes, got {len(der)})"
        )
    if len(der) == ED25519_SPKI_LEN:
        if der[: len(ED25519_SPKI_HEADER)] != ED25519_SPKI_HEADER:
            raise InvalidEncodingError("Invalid ED25519 SPKI DER: bad SEQUENCE headers")
        return der[len(ED25519_SPKI_HEADER):]
    # Non-standard wrapping: the key is fixed-size and always sits at the tail.
    return der[-ED25519_RAW_LEN:]


def _extract_secp256k1(der: bytes) -> bytes:
    if len(der) < SECP256K1_COMPRESSED_LEN:
        raise InvalidEncodingError(
            f"Invalid ECDSA SPKI DER: too short (expected >= {SECP256K1_COMPRESSED_LEN} bytes, got {len(der)})"
        )
    # Point format is chosen by buffer length only; the prefix is not a gate.
    if len(der) >= SECP256K1_UNCOMPRESSED_LEN:
        point = der[-SECP256K1_UNCOMPRESSED_LEN:]
        if point[0] != 0x04:
            logger.warning(
                "secp256k1 tail selected as uncompressed but prefix is 0x%02x (len=%d)",
                point[0],
                len(der),
            )
    else:
        point = der[-SECP256K1_COMPRESSED_LEN:]
        if point[0] not in (0x02, 0x03):
            logger.warning(
                "secp256k1 tail selected as compressed but prefix is 0x%02x (len=%d)",
                point[0],
                len(der),
            )
    return point


def extract_public_key_from_der(der: bytes, key_spec: Union[KeySpec, str]) -> bytes:
    """
    Extract raw public key bytes from a SubjectPublicKeyInfo DER buffer.

    Ed25519 yields 32 bytes. secp256k1 yields a 65-byte uncompressed point
    when the buffer is long enough to hold one, otherwise a 33-byte
    compressed point.
    """
    spec = KeySpec.parse(key_spec)
    data = bytes(der)
    if spec is KeySpec.ED25519:
        return _extract_ed25519(data)
    if spec is KeySpec.SECP256K1:
        return _extract_secp256k1(data)
    raise UnsupportedKeySpecError(f"Unsupported key spec: {key_spec!r}")  # pragma: no cover


def build_spki_der(raw_public_key: bytes, key_spec: Union[KeySpec, str]) -> bytes:
    """Wrap a raw public key into its SPKI DER encoding."""
    spec = KeySpec.parse(key_spec)
    raw = bytes(raw_public_key)
    if spec is KeySpec.ED25519:
        if len(raw) != ED25519_RAW_LEN:
            raise InvalidEncodingError(f"ED25519 public key must be {ED25519_RAW_LEN} bytes, got {len(raw)}")
        return ED25519_SPKI_HEADER + raw
    if len(raw) == SECP256K1_UNCOMPRESSED_LEN:
        return SECP256K1_SPKI_HEADER + raw
    if len(raw) == SECP256K1_COMPRESSED_LEN:
        return SECP256K1_COMPRESSED_SPKI_HEADER + raw
    raise InvalidEncodingError(f"secp256k1 public key must be 33 or 65 bytes, got {len(raw)}")


def public_key_hex(raw_public_key: bytes) -> str:
    """Chain-native textual form of a raw public key (lowercase hex)."""
    return binascii.hexlify(raw_public_key).decode("ascii")


# ---------------------------------------------------------------------------
# Signing parameters
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SigningParams:
    algorithm: SigningAlgorithm
    message_type: MessageType

    def prepare(self, message: bytes) -> bytes:
        """Return the payload to hand to the backend for this scheme."""
        if self.message_type == "DIGEST":
            return hashlib.sha256(message).digest()
        return bytes(message)


_ED25519_PARAMS = SigningParams(algorithm="ED25519_SHA_512", message_type="RAW")
_SECP256K1_PARAMS = SigningParams(algorithm="ECDSA_SHA_256", message_type="DIGEST")


def signing_params(key_spec: Union[KeySpec, str]) -> SigningParams:
    """
    Ed25519 is signed over the raw message (the backend hashes internally);
    secp256k1 is signed over a SHA-256 digest computed here.
    """
    spec = KeySpec.parse(key_spec)
    if spec is KeySpec.ED25519:
        return _ED25519_PARAMS
    return _SECP256K1_PARAMS


__all__ = [
    "KeySpec",
    "MessageType",
    "SigningAlgorithm",
    "KEY_USAGE_SIGN_VERIFY",
    "ED25519_SPKI_HEADER",
    "SECP256K1_SPKI_HEADER",
    "extract_public_key_from_der",
    "build_spki_der",
    "public_key_hex",
    "SigningParams",
    "signing_params",
]
