from __future__ import annotations

import pytest

from ligo_session.credential_store import MemoryBackend
from tests._helpers.fake_ligo import FakeClock, FakeLigoServer


@pytest.fixture
def server() -> FakeLigoServer:
    return FakeLigoServer()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend() -> MemoryBackend:
    return MemoryBackend()
