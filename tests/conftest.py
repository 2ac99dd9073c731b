"""Shared test fixtures."""

from __future__ import annotations

import os
import tempfile
from collections.abc import AsyncGenerator
from datetime import datetime, timezone
from typing import Any

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession

# In-memory SQLite, shared across sessions through a StaticPool
os.environ["KP_DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ["KP_LOG_FORMAT"] = "console"

from kartpark.auth.jwt import create_access_token, reset_keys  # noqa: E402
from kartpark.config import get_settings  # noqa: E402
from kartpark.database import close_db, get_engine, init_db, session_scope  # noqa: E402
from kartpark.db.base import Base  # noqa: E402
from kartpark.db.models import LINK_LINKED, WebUser  # noqa: E402
from kartpark.main import create_app  # noqa: E402
from kartpark.sessions.service import record_session  # noqa: E402
from kartpark.time_utils import utcnow  # noqa: E402


def _ensure_test_keys() -> None:
    """Generate an RSA key pair for token signing if not configured."""
    if os.environ.get("KP_JWT_PRIVATE_KEY_PATH"):
        return

    tmpdir = tempfile.mkdtemp(prefix="kp_test_keys_")
    private_path = os.path.join(tmpdir, "jwt_private.pem")
    public_path = os.path.join(tmpdir, "jwt_public.pem")

    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    with open(private_path, "wb") as f:
        f.write(
            key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
    with open(public_path, "wb") as f:
        f.write(
            key.public_key().public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo,
            )
        )

    os.environ["KP_JWT_PRIVATE_KEY_PATH"] = private_path
    os.environ["KP_JWT_PUBLIC_KEY_PATH"] = public_path

    # Clear cached settings and JWT keys
    get_settings.cache_clear()
    reset_keys()


_ensure_test_keys()


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[None, None]:
    """Fresh in-memory database with every table created."""
    settings = get_settings()
    await init_db(settings.database_url)
    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    await close_db()


@pytest_asyncio.fixture
async def db_session(engine: None) -> AsyncGenerator[AsyncSession, None]:
    """Get a direct database session for seeding and assertions."""
    async with session_scope() as session:
        yield session


@pytest.fixture
def app() -> FastAPI:
    return create_app()


@pytest_asyncio.fixture
async def client(engine: None, app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Async HTTP test client. Redis is not initialized, so rate limiting is off."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class FakeRedis:
    """In-memory stand-in for the string commands the lap-capture switch uses."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}

    async def get(self, key: str) -> str | None:
        return self.data.get(key)

    async def set(self, key: str, value: str) -> bool:
        self.data[key] = value
        return True

    async def delete(self, *keys: str) -> int:
        return sum(1 for k in keys if self.data.pop(k, None) is not None)


class UnreachableRedis:
    """A Redis client whose server is down: every read fails."""

    async def get(self, key: str) -> str | None:
        raise RedisConnectionError("Connection refused")


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------


def at(day: int, hour: int = 18) -> datetime:
    """A fixed UTC instant in March 2026."""
    return datetime(2026, 3, day, hour, 0, tzinfo=timezone.utc)


async def make_user(
    db: AsyncSession,
    email: str,
    first_name: str = "Test",
    last_name: str = "Driver",
    *,
    alias: str | None = None,
    roles: list[str] | None = None,
    driver_name: str | None = None,
) -> WebUser:
    """Insert an account, optionally already linked to ``driver_name``."""
    now = utcnow()
    user = WebUser(
        email=email,
        first_name=first_name,
        last_name=last_name,
        alias=alias,
        roles=roles or ["user"],
        account_status="active",
        created_at=now,
        updated_at=now,
    )
    if driver_name is not None:
        user.driver_name = driver_name
        user.link_status = LINK_LINKED
        user.linked_at = now
    db.add(user)
    await db.flush()
    return user


async def make_session(
    db: AsyncSession,
    session_id: str,
    day: int,
    results: list[dict[str, Any]],
    session_type: str = "race",
) -> Any:  # noqa: ANN401
    """Record a timing session through the session store."""
    race_session, _ = await record_session(
        db,
        session_id=session_id,
        session_name=f"Session {session_id}",
        session_date=at(day),
        session_type=session_type,
        results=results,
    )
    return race_session


def auth_headers(user: WebUser) -> dict[str, str]:
    return {"Authorization": f"Bearer {create_access_token(user.id, list(user.roles))}"}
