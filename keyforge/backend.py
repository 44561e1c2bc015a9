from __future__ import annotations

import datetime as _dt
import logging
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.utils import Prehashed

from .crypto import KEY_USAGE_SIGN_VERIFY, KeySpec, MessageType
from .errors import NotFoundError
from .utils import Clock, system_clock

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Backend response types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class BackendKeyMetadata:
    key_id: str
    arn: str
    created_at: _dt.datetime
    key_spec: str


@dataclass(frozen=True)
class BackendPublicKey:
    public_key_der: bytes
    key_spec: str


@dataclass(frozen=True)
class BackendSignature:
    signature: bytes
    signing_algorithm: str


# ---------------------------------------------------------------------------
# Capability interface
# ---------------------------------------------------------------------------


class KeyBackend(ABC):
    """
    Remote key-material provider (HSM / KMS class service).

    The store and manager depend only on these three operations; any real
    or simulated implementation is a drop-in. Implementations are expected
    to raise NotFoundError for unknown key ids and BackendUnavailableError
    for transport / auth failures, and to enforce their own timeouts.
    """

    @abstractmethod
    def create_key(
        self,
        *,
        key_spec: str,
        key_usage: str,
        description: Optional[str] = None,
        tags: Optional[Mapping[str, str]] = None,
    ) -> BackendKeyMetadata:
        raise NotImplementedError

    @abstractmethod
    def get_public_key(self, key_id: str) -> BackendPublicKey:
        raise NotImplementedError

    @abstractmethod
    def sign(
        self,
        *,
        key_id: str,
        message: bytes,
        message_type: MessageType,
        signing_algorithm: str,
    ) -> BackendSignature:
        raise NotImplementedError


# ---------------------------------------------------------------------------
# In-process backend
# ---------------------------------------------------------------------------


@dataclass
class _LocalKey:
    key_id: str
    arn: str
    key_spec: KeySpec
    created_at: _dt.datetime
    private_key: object = field(repr=False)
    public_key_der: bytes = b""
    description: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)


class LocalKeyBackend(KeyBackend):
    """
    Software stand-in for a signing backend.

    Keys are generated with ``cryptography`` and never leave the process.
    Suitable for tests and local demos only; there is no persistence and the
    private keys live in ordinary memory.
    """

    def __init__(
        self,
        *,
        region: str = "local",
        account_id: str = "000000000000",
        clock: Optional[Clock] = None,
        latency_s: float = 0.0,
    ) -> None:
        self.region = region
        self.account_id = account_id
        self._clock = clock or system_clock
        self._latency_s = max(0.0, float(latency_s))
        self._lock = threading.RLock()
        self._keys: Dict[str, _LocalKey] = {}

    def _simulate_latency(self) -> None:
        if self._latency_s > 0.0:
            time.sleep(self._latency_s)

    def _get(self, key_id: str) -> _LocalKey:
        with self._lock:
            key = self._keys.get(key_id)
        if key is None:
            raise NotFoundError(f"Key {key_id} not found")
        return key

    def create_key(
        self,
        *,
        key_spec: str,
        key_usage: str,
        description: Optional[str] = None,
        tags: Optional[Mapping[str, str]] = None,
    ) -> BackendKeyMetadata:
        spec = KeySpec.parse(key_spec)
        if key_usage != KEY_USAGE_SIGN_VERIFY:
            raise ValueError(f"Unsupported key usage: {key_usage}")

        if spec is KeySpec.ED25519:
            private_key: object = Ed25519PrivateKey.generate()
        else:
            private_key = ec.generate_private_key(ec.SECP256K1())
        der = private_key.public_key().public_bytes(  # type: ignore[attr-defined]
            encoding=serialization.Encoding.DER,
            format=serialization.PublicFormat.SubjectPublicKeyInfo,
        )

        key_id = str(uuid.uuid4())
        created_at = _dt.datetime.fromtimestamp(self._clock(), tz=_dt.timezone.utc)
        key = _LocalKey(
            key_id=key_id,
            arn=f"arn:local:kms:{self.region}:{self.account_id}:key/{key_id}",
            key_spec=spec,
            created_at=created_at,
            private_key=private_key,
            public_key_der=der,
            description=description,
            tags=dict(tags or {}),
        )
        self._simulate_latency()
        with self._lock:
            self._keys[key_id] = key
        logger.debug("local backend created key %s (%s)", key_id, spec.value)
        return BackendKeyMetadata(
            key_id=key_id,
            arn=key.arn,
            created_at=created_at,
            key_spec=spec.value,
        )

    def get_public_key(self, key_id: str) -> BackendPublicKey:
        key = self._get(key_id)
        self._simulate_latency()
        return BackendPublicKey(public_key_der=key.public_key_der, key_spec=key.key_spec.value)

    def sign(
        self,
        *,
        key_id: str,
        message: bytes,
        message_type: MessageType,
        signing_algorithm: str,
    ) -> BackendSignature:
        key = self._get(key_id)
        self._simulate_latency()
        data = bytes(message)

        if key.key_spec is KeySpec.ED25519:
            if message_type != "RAW":
                raise ValueError("ED25519 keys only sign RAW messages")
            signature = key.private_key.sign(data)  # type: ignore[attr-defined]
        else:
            if message_type == "DIGEST":
                if len(data) != 32:
                    raise ValueError("DIGEST messages must be 32-byte SHA-256 digests")
                algo = ec.ECDSA(Prehashed(hashes.SHA256()))
            else:
                algo = ec.ECDSA(hashes.SHA256())
            signature = key.private_key.sign(data, algo)  # type: ignore[attr-defined]

        return BackendSignature(signature=signature, signing_algorithm=signing_algorithm)

    def verify(self, key_id: str, message: bytes, signature: bytes, *, message_type: MessageType = "RAW") -> bool:
        """Check a signature produced by this backend."""
        key = self._get(key_id)
        public = key.private_key.public_key()  # type: ignore[attr-defined]
        try:
            if key.key_spec is KeySpec.ED25519:
                public.verify(signature, bytes(message))
            elif message_type == "DIGEST":
                public.verify(signature, bytes(message), ec.ECDSA(Prehashed(hashes.SHA256())))
            else:
                public.verify(signature, bytes(message), ec.ECDSA(hashes.SHA256()))
        except InvalidSignature:
            return False
        return True

    def key_count(self) -> int:
        with self._lock:
            return len(self._keys)


__all__ = [
    "BackendKeyMetadata",
    "BackendPublicKey",
    "BackendSignature",
    "KeyBackend",
    "LocalKeyBackend",
]
