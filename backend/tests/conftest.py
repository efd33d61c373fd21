"""Shared test fixtures.

Each test gets its own file-backed SQLite database (WAL mode, so the
background sessions used by imports, categorization and the audit sink can
read while another session writes).
"""

from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event

from app.api.deps import get_db, get_job_queue, get_session_factory
from app.core.database import build_engine, build_session_factory, init_db
from app.main import app
from app.models import Account, Rule, User
from app.services.job_queue import JobQueue


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)

    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_pragmas(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA busy_timeout=10000")
        cursor.close()

    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
async def user(db):
    user = User(email="owner@example.com", full_name="Account Owner", role="user")
    db.add(user)
    await db.commit()
    return user


@pytest.fixture
async def analyst(db):
    analyst = User(email="analyst@example.com", full_name="Alert Analyst", role="analyst")
    db.add(analyst)
    await db.commit()
    return analyst


@pytest.fixture
async def account(db, user):
    account = Account(user_id=user.id, name="Checking", type="checking", currency="USD", balance=Decimal("0.00"))
    db.add(account)
    await db.commit()
    return account


@pytest.fixture
def make_rule(db):
    async def _make_rule(rule_type: str, condition: dict | None = None, **kwargs) -> Rule:
        rule = Rule(
            name=kwargs.pop("name", f"{rule_type} rule"),
            type=rule_type,
            severity=kwargs.pop("severity", "medium"),
            condition=condition or {},
            **kwargs,
        )
        db.add(rule)
        await db.commit()
        return rule

    return _make_rule


@pytest.fixture
def job_queue(session_factory):
    return JobQueue(session_factory)


@pytest.fixture
async def client(session_factory, job_queue):
    """Async test client for the FastAPI app, bound to the test database."""

    async def _get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_job_queue] = lambda: job_queue
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
    app.dependency_overrides.clear()
