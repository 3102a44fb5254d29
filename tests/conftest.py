import pytest

from jobrunner.registry import WorkerRegistry
from tests._helpers.backends import make_backend
from tests._helpers.clock import FakeClock

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
async def sqlite_backend(tmp_path, clock):
    backend = await make_backend("sqlite", tmp_path, clock)
    yield backend
    await backend.close()

@pytest.fixture(params=["sqlite", "fakeredis", "postgres", "redis"])
async def backend(request, tmp_path, clock):
    """Every backend implementation, driven by the fake clock."""
    backend = await make_backend(request.param, tmp_path, clock)
    yield backend
    await backend.clear_all()
    await backend.close()

@pytest.fixture
def registry():
    return WorkerRegistry()
