"""
Test configuration for netcoach tests.

sys.path is configured so BOTH import styles resolve:
  - 'from tests.factories ...'   (test helpers, using netcoach/ as root)
  - 'from netcoach.store ...'    (production modules, using the repository root)

Shared fixtures:
  - redis            fakeredis async client (decode_responses=True, like the real pool)
  - engine           aiosqlite file database with foreign keys enforced (ON DELETE CASCADE)
  - session_factory  async_sessionmaker bound to that engine
  - clock            controllable UTC clock shared by store and orchestrator
  - store            SessionStore over the three fixtures above
"""
import sys
from pathlib import Path

_package_dir = Path(__file__).parent.parent        # .../netcoach/
_project_root = _package_dir.parent                # repository root

for _path in (_project_root, _package_dir):
    if str(_path) not in sys.path:
        sys.path.insert(0, str(_path))

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from fakeredis import aioredis as fake_aioredis  # noqa: E402
from sqlalchemy import event  # noqa: E402

import netcoach.models  # noqa: E402,F401  (registers every table on Base.metadata)
from netcoach.database import Base, create_engine, create_session_factory  # noqa: E402
from netcoach.store import SessionStore  # noqa: E402
from tests.factories import FakeClock  # noqa: E402


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def redis():
    client = fake_aioredis.FakeRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'netcoach.db'}")

    @event.listens_for(engine.sync_engine, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def store(session_factory, redis, clock) -> SessionStore:
    return SessionStore(session_factory, redis, clock=clock)
