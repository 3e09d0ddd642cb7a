"""
Test configuration for phone_server tests.

sys.path is configured so 'from phone_server...' resolves when pytest is run
from the repository root or from inside phone_server/.

Shared fixtures: fakeredis client, a controllable clock and the in-memory store.
"""
import sys
from pathlib import Path

import fakeredis
import pytest
import pytest_asyncio

_package_dir = Path(__file__).parent.parent        # .../phone_server/
_project_root = _package_dir.parent                # repository root

for _path in (_project_root,):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

from phone_server.tests.fakes import FakeClock, InMemoryStore  # noqa: E402


@pytest_asyncio.fixture
async def redis():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def clock() -> FakeClock:
    # 2024-01-15T12:00:00Z
    return FakeClock(1_705_320_000.0)


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()
