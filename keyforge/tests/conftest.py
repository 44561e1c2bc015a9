# keyforge/tests/conftest.py
from __future__ import annotations

from typing import Optional

import pytest

from keyforge import metrics
from keyforge.backend import KeyBackend, LocalKeyBackend
from keyforge.config import Settings
from keyforge.errors import BackendUnavailableError

START = 1_700_000_000.0


class FakeClock:
    """Manually advanced epoch-seconds clock."""

    def __init__(self, start: float = START) -> None:
        self.now = float(start)

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FlakyBackend(KeyBackend):
    """Delegates to a real backend, failing the next N calls of a given operation."""

    def __init__(self, inner: KeyBackend) -> None:
        self.inner = inner
        self._fail = {"create_key": 0, "get_public_key": 0, "sign": 0}
        self.error: Optional[Exception] = None

    def fail_next(self, operation: str, times: int = 1, error: Optional[Exception] = None) -> None:
        self._fail[operation] = times
        self.error = error

    def _maybe_fail(self, operation: str) -> None:
        if self._fail[operation] > 0:
            self._fail[operation] -= 1
            raise self.error or BackendUnavailableError(f"{operation}: connection reset")

    def create_key(self, **kwargs):
        self._maybe_fail("create_key")
        return self.inner.create_key(**kwargs)

    def get_public_key(self, key_id):
        self._maybe_fail("get_public_key")
        return self.inner.get_public_key(key_id)

    def sign(self, **kwargs):
        self._maybe_fail("sign")
        return self.inner.sign(**kwargs)


@pytest.fixture(autouse=True)
def _metrics_off():
    metrics.set_enabled(False)
    yield
    metrics.set_enabled(True)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return Settings(region="us-west-2", metrics_enabled=False)


@pytest.fixture
def backend(clock) -> LocalKeyBackend:
    return LocalKeyBackend(region="us-west-2", clock=clock)


@pytest.fixture
def flaky(backend) -> FlakyBackend:
    return FlakyBackend(backend)
