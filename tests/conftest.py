"""
Shared test fixtures for Haven backend tests.

Tests run against a temporary SQLite file through aiosqlite. Every
transaction starts with BEGIN IMMEDIATE so concurrent writers serialize the
way row-locked PostgreSQL writes do.
"""
import uuid
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from core.auth import AnonymousContext, AuthContext
from core.retry import RetryPolicy
from core.security import PlaintextStrategy
from core.services.anonymous_chat_service import AnonymousChatService
from models.base import Base
from models.session import ChatSession
from models.user import User, UserRole


@pytest.fixture
async def engine(tmp_path):
    """File-backed SQLite engine with immediate-mode transactions."""
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'chat.db'}",
        connect_args={"timeout": 30},
    )

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()
        # Let the "begin" listener control transactions
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Session for seeding and inspecting rows directly."""
    async with session_factory() as session:
        yield session


# =============================================================================
# Collaborators
# =============================================================================


@pytest.fixture
def retry_sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def retry_policy(retry_sleep) -> RetryPolicy:
    """Three attempts, no real waiting."""
    return RetryPolicy(attempts=3, delay=1.0, sleep=retry_sleep)


@pytest.fixture
def mock_broadcaster() -> MagicMock:
    """Broadcaster double that records published events."""
    broadcaster = MagicMock()
    broadcaster.is_configured = True
    broadcaster.publish = AsyncMock(return_value=1)
    broadcaster.publish_many = AsyncMock(return_value=1)
    broadcaster.send_to_connection = AsyncMock(return_value=True)
    broadcaster.connection_service = MagicMock()
    return broadcaster


@pytest.fixture
def chat_service(session_factory, mock_broadcaster, retry_policy) -> AnonymousChatService:
    return AnonymousChatService(
        session_factory,
        broadcaster=mock_broadcaster,
        retry_policy=retry_policy,
        content_strategy=PlaintextStrategy(),
    )


# =============================================================================
# Users and principals
# =============================================================================


async def _create_user(session_factory, user_id: str, role: UserRole) -> User:
    async with session_factory() as db:
        user = User(id=user_id, email=f"{user_id}@example.com", role=role.value)
        db.add(user)
        await db.commit()
        return user


@pytest.fixture
async def counselor(session_factory) -> User:
    return await _create_user(session_factory, "counselor_1", UserRole.COUNSELOR)


@pytest.fixture
async def other_counselor(session_factory) -> User:
    return await _create_user(session_factory, "counselor_2", UserRole.COUNSELOR)


@pytest.fixture
async def admin(session_factory) -> User:
    return await _create_user(session_factory, "admin_1", UserRole.ADMIN)


@pytest.fixture
async def student(session_factory) -> User:
    return await _create_user(session_factory, "student_1", UserRole.STUDENT)


@pytest.fixture
def counselor_ctx(counselor) -> AuthContext:
    return AuthContext(user_id=counselor.id, role=counselor.role)


@pytest.fixture
def other_counselor_ctx(other_counselor) -> AuthContext:
    return AuthContext(user_id=other_counselor.id, role=other_counselor.role)


@pytest.fixture
def admin_ctx(admin) -> AuthContext:
    return AuthContext(user_id=admin.id, role=admin.role)


@pytest.fixture
def anon_id() -> str:
    return f"anon_{uuid.uuid4().hex}"


@pytest.fixture
def anon_ctx(anon_id) -> AnonymousContext:
    return AnonymousContext(anonymous_id=anon_id)


@pytest.fixture
async def chat(chat_service, anon_id) -> ChatSession:
    """An unassigned session owned by anon_id."""
    session = await chat_service.create_session(anon_id, "academic")
    chat_service.broadcaster.publish_many.reset_mock()
    return session


@pytest.fixture
async def assigned_chat(chat_service, chat, counselor_ctx) -> ChatSession:
    """The chat fixture, claimed by counselor_1."""
    session = await chat_service.assign_counselor(chat.id, counselor_ctx)
    chat_service.broadcaster.publish_many.reset_mock()
    return session


# =============================================================================
# HTTP client
# =============================================================================


@pytest.fixture
def app():
    """The FastAPI app instance."""
    from main import app as fastapi_app
    return fastapi_app


@pytest.fixture
async def async_client(app, session_factory, mock_broadcaster, retry_policy) -> AsyncGenerator[AsyncClient, None]:
    """Async test client wired to the test database and broadcaster double."""
    from core.database import get_session_factory
    from core.services.broadcaster import get_broadcaster
    from routers.anonymous_chat import get_retry_policy

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_broadcaster] = lambda: mock_broadcaster
    app.dependency_overrides[get_retry_policy] = lambda: retry_policy

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
