"""
Shared pytest fixtures.

The suite runs with ``USE_SQLITE=true`` so importing ``repokit`` never needs
PostgreSQL credentials.  Two kinds of session are offered:

- ``mock_db``: an ``AsyncMock`` for delegation / argument-validation tests.
- ``db``: a real ``AsyncSession`` on a throw-away SQLite file, with the test
  tables created, for behaviour tests against the actual ORM.
"""

import os

os.environ.setdefault("USE_SQLITE", "true")

from unittest.mock import AsyncMock, MagicMock  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from repokit.core.resilience import db_circuit_breaker  # noqa: E402
from repokit.db.base import create_tables  # noqa: E402
from repokit.repositories.base import BaseRepository  # noqa: E402
from tests.entities import OrderLine, Product  # noqa: E402

# ────────────────────────────────────────────────────────────────────────────
# Factory helpers
# ────────────────────────────────────────────────────────────────────────────


def make_product(
    *,
    name: str = "Widget",
    category: str = "general",
    price_cents: int = 1000,
    id: int | None = None,
) -> Product:
    """Create a Product with sensible test defaults."""
    return Product(id=id, name=name, category=category, price_cents=price_cents)


def make_order_line(
    *,
    order_id: int = 1,
    line_no: int = 1,
    sku: str = "SKU-1",
    quantity: int = 1,
) -> OrderLine:
    """Create an OrderLine with sensible test defaults."""
    return OrderLine(order_id=order_id, line_no=line_no, sku=sku, quantity=quantity)


# ────────────────────────────────────────────────────────────────────────────
# Fixtures
# ────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def _reset_circuit_breaker():
    """Keep failures recorded by one test from opening the circuit for the next."""
    db_circuit_breaker.reset()
    yield
    db_circuit_breaker.reset()


@pytest.fixture()
def mock_db():
    """A mocked AsyncSession that tracks add/flush/commit/rollback calls."""
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.execute = AsyncMock()
    session.get = AsyncMock()
    session.delete = AsyncMock()
    session.info = {}
    session.__contains__.return_value = True
    return session


@pytest.fixture()
def mock_repo(mock_db):
    """A Product repository bound to the mocked session."""
    return BaseRepository(Product, mock_db)


@pytest_asyncio.fixture()
async def session_factory(tmp_path):
    """A session factory on a fresh SQLite file with the test tables created."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'repokit.db'}")
    await create_tables(engine)
    yield async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture()
async def db(session_factory):
    """A live session for one test."""
    async with session_factory() as session:
        yield session


@pytest.fixture()
def products(db):
    return BaseRepository(Product, db)


@pytest.fixture()
def order_lines(db):
    return BaseRepository(OrderLine, db)
