"""Shared test fixtures — async DB, client, auth helpers, factories.

Reusable across all test modules (approvals, notifications, common).
Uses SQLite + aiosqlite for fast isolated tests without PostgreSQL.
"""

from __future__ import annotations

import os

# Set test settings before any other import touches pydantic-settings
os.environ.setdefault("JWT_SECRET", "test-secret-for-ci-do-not-use-in-production")
os.environ.setdefault("RATE_LIMIT_ENABLED", "false")
os.environ.setdefault("ENVIRONMENT", "test")

import uuid
from datetime import date, datetime, timedelta, timezone
from typing import AsyncGenerator, Optional

import pytest
from httpx import ASGITransport, AsyncClient
from jose import jwt
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from hrflow.common.constants import UserRole
from hrflow.config import settings
from hrflow.database import Base, get_db
from hrflow.main import create_app

# Import ALL model modules so SQLAlchemy can resolve cross-module relationships
# (e.g. Employee → RoleAssignment, Notification)
import hrflow.approvals.models  # noqa: F401
import hrflow.auth.models  # noqa: F401
import hrflow.common.audit  # noqa: F401
import hrflow.core_hr.models  # noqa: F401
import hrflow.notifications.models  # noqa: F401

# ── SQLite compat: compile PG-specific types to TEXT ────────────────

from sqlalchemy.dialects.postgresql import JSONB, UUID as PG_UUID
from sqlalchemy.ext.compiler import compiles


@compiles(JSONB, "sqlite")
def _jsonb_sqlite(element, compiler, **kw):
    return "TEXT"


@compiles(PG_UUID, "sqlite")
def _uuid_sqlite(element, compiler, **kw):
    return "CHAR(36)"


# ── Test database (SQLite in-memory) ────────────────────────────────

TEST_DATABASE_URL = "sqlite+aiosqlite://"

engine = create_async_engine(
    TEST_DATABASE_URL,
    echo=False,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)


# Register PG-compatible functions for SQLite
@event.listens_for(engine.sync_engine, "connect")
def _register_sqlite_functions(dbapi_conn, connection_record):
    """Register NOW() and uuid_generate_v4() as SQLite custom functions."""
    dbapi_conn.create_function(
        "NOW", 0, lambda: datetime.now(timezone.utc).isoformat(),
    )
    dbapi_conn.create_function(
        "uuid_generate_v4", 0, lambda: str(uuid.uuid4()),
    )

TestSessionFactory = async_sessionmaker(
    engine, class_=AsyncSession, expire_on_commit=False,
)


@pytest.fixture(autouse=True)
async def _setup_db():
    """Create all tables before each test, drop after."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


async def _override_get_db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


# ── FastAPI test client ─────────────────────────────────────────────

@pytest.fixture
async def app():
    """Create a fresh app instance with DB dependency overridden."""
    application = create_app()
    application.dependency_overrides[get_db] = _override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP client wired to the test app."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac


# ── Database session (for direct DB operations in tests) ────────────

@pytest.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSessionFactory() as session:
        yield session
        await session.commit()


# ── Model factories ─────────────────────────────────────────────────

def _make_department(
    *,
    name: Optional[str] = None,
    code: Optional[str] = None,
    head_employee_id: Optional[uuid.UUID] = None,
) -> dict:
    suffix = uuid.uuid4().hex[:6].upper()
    return dict(
        id=uuid.uuid4(),
        name=name or f"Dept-{suffix}",
        code=code or f"D{suffix}",
        head_employee_id=head_employee_id,
        is_active=True,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )


def _make_position(
    *,
    title: str = "Finance Controller",
    department_id: Optional[uuid.UUID] = None,
) -> dict:
    return dict(
        id=uuid.uuid4(),
        title=title,
        code=f"P{uuid.uuid4().hex[:6].upper()}",
        department_id=department_id,
        is_active=True,
        created_at=datetime.now(timezone.utc),
    )


def _make_employee(
    *,
    email: Optional[str] = None,
    first_name: str = "Test",
    last_name: str = "User",
    department_id: Optional[uuid.UUID] = None,
    position_id: Optional[uuid.UUID] = None,
    is_active: bool = True,
) -> dict:
    code = uuid.uuid4().hex[:6].upper()
    return dict(
        id=uuid.uuid4(),
        employee_code=f"HF-{code}",
        first_name=first_name,
        last_name=last_name,
        email=email or f"user.{code.lower()}@hrflow.test",
        date_of_joining=date(2024, 1, 15),
        employment_status="active",
        department_id=department_id,
        position_id=position_id,
        is_active=is_active,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
    )


async def seed_department(db: AsyncSession, **kwargs):
    from hrflow.core_hr.models import Department

    department = Department(**_make_department(**kwargs))
    db.add(department)
    await db.flush()
    return department


async def seed_position(db: AsyncSession, **kwargs):
    from hrflow.core_hr.models import Position

    position = Position(**_make_position(**kwargs))
    db.add(position)
    await db.flush()
    return position


async def seed_employee(
    db: AsyncSession,
    *,
    role: Optional[UserRole] = None,
    **kwargs,
):
    """Insert an employee, optionally with an active role assignment."""
    from hrflow.auth.models import RoleAssignment
    from hrflow.core_hr.models import Employee

    employee = Employee(**_make_employee(**kwargs))
    db.add(employee)
    await db.flush()
    if role is not None:
        db.add(RoleAssignment(employee_id=employee.id, role=role, is_active=True))
        await db.flush()
    return employee


@pytest.fixture
async def test_department(db):
    return await seed_department(db, name="Engineering", code="ENG")


@pytest.fixture
async def test_employee(db, test_department):
    """Active employee in the Engineering department."""
    return await seed_employee(
        db, email="test.user@hrflow.test", department_id=test_department.id,
    )


# ── Auth helpers ────────────────────────────────────────────────────

def create_access_token(
    employee_id: uuid.UUID,
    role: UserRole = UserRole.employee,
    expired: bool = False,
) -> str:
    """Generate a JWT access token for testing."""
    if expired:
        exp = datetime.now(timezone.utc) - timedelta(hours=1)
    else:
        exp = datetime.now(timezone.utc) + timedelta(hours=1)
    payload = {
        "sub": str(employee_id),
        "role": role.value,
        "type": "access",
        "exp": exp,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def auth_headers_for(
    employee_id: uuid.UUID, role: UserRole = UserRole.employee,
) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(employee_id, role)}"}


@pytest.fixture
async def auth_headers(test_employee) -> dict[str, str]:
    """Bearer auth headers for ``test_employee``."""
    return auth_headers_for(test_employee.id)
