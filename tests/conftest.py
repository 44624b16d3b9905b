import os
import uuid

# Settings are read at import time, so the test defaults go in first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///./firmassist_test.db")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("ALGORITHM", "HS256")
os.environ.setdefault("ACCESS_TOKEN_EXPIRE_MINUTES", "30")

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

from firmassist.main import app
from firmassist.core import models
from firmassist.core.database import Base, get_db, get_session_factory
from firmassist.core.security import create_access_token, hash_password
from firmassist.api.endpoints.ai import get_llm_adapter
from firmassist.ai_feature.llm.base import LLMAdapter, LLMResponse
from firmassist.ai_feature.scope import Principal
from firmassist.ai_feature.turns import ToolCall


# =========================
# Model stubs
# =========================
class ScriptedAdapter(LLMAdapter):
    """Replays a fixed list of responses; exceptions in the list are raised."""

    model_name = "stub-model"

    def __init__(self, responses=None):
        self.responses = list(responses or [])
        self.calls = []

    async def generate(self, turns, tools=None):
        self.calls.append({"turns": list(turns), "tools": tools})
        item = self.responses.pop(0) if self.responses else LLMResponse(text="Done.")
        if isinstance(item, BaseException):
            raise item
        return item


class AlwaysToolsAdapter(LLMAdapter):
    """Asks for a tool on every pass, even when no tools are offered."""

    model_name = "stub-model"

    def __init__(self):
        self.calls = []

    async def generate(self, turns, tools=None):
        self.calls.append({"turns": list(turns), "tools": tools})
        return LLMResponse(
            text="",
            tool_calls=[ToolCall(name="list_clients", args={"skip": 0, "limit": 5})],
        )


def text_response(text):
    return LLMResponse(text=text)


def tool_response(*calls):
    return LLMResponse(
        tool_calls=[ToolCall(name=name, args=args) for name, args in calls]
    )


# =========================
# Database
# =========================
# A fresh SQLite file per test; the assistant opens its own sessions, so
# everything the tests set up is committed
@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# Hashed once, bcrypt is slow
DEFAULT_PASSWORD_HASH = hash_password("password123")


class Seeder:
    """Creates committed rows with sensible defaults."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _save(self, obj):
        self.db.add(obj)
        await self.db.commit()
        await self.db.refresh(obj)
        return obj

    async def firm(self, name="Sharma & Associates"):
        return await self._save(models.Firm(name=name))

    async def user(self, firm, role="employee", **fields):
        fields.setdefault("email", f"{role}_{uuid.uuid4().hex[:8]}@example.com")
        fields.setdefault("full_name", f"Test {role.title()}")
        fields.setdefault("password", DEFAULT_PASSWORD_HASH)
        return await self._save(models.User(firm_id=firm.id, role=role, **fields))

    async def client(self, firm, **fields):
        fields.setdefault("name", f"Client {uuid.uuid4().hex[:6]}")
        fields.setdefault("status", "active")
        return await self._save(models.Client(firm_id=firm.id, **fields))

    async def task(self, firm, collaborators=(), **fields):
        fields.setdefault("title", f"Task {uuid.uuid4().hex[:6]}")
        fields.setdefault("status", "todo")
        fields.setdefault("priority", "medium")
        task = models.Task(firm_id=firm.id, **fields)
        task.collaborators = list(collaborators)
        return await self._save(task)

    async def invoice(self, firm, **fields):
        fields.setdefault("invoice_number", f"INV-{uuid.uuid4().hex[:6]}")
        fields.setdefault("amount", 1000)
        fields.setdefault("status", "sent")
        return await self._save(models.Invoice(firm_id=firm.id, **fields))


@pytest_asyncio.fixture(scope="function")
async def seed(db_session):
    return Seeder(db_session)


@pytest_asyncio.fixture(scope="function")
async def firm(seed):
    return await seed.firm()


@pytest_asyncio.fixture(scope="function")
async def owner(seed, firm):
    return await seed.user(firm, role="owner", full_name="Anita Owner")


@pytest_asyncio.fixture(scope="function")
async def employee(seed, firm):
    return await seed.user(firm, role="employee", full_name="Ravi Employee")


def principal_of(user) -> Principal:
    return Principal.from_user(user)


def auth_headers(user):
    token = create_access_token({"user_id": user.id, "role": user.role})
    return {"Authorization": f"Bearer {token}"}


# =========================
# HTTP client
# =========================
@pytest.fixture
def llm_stub():
    return ScriptedAdapter([text_response("Hello from the assistant")])


@pytest_asyncio.fixture(scope="function")
async def client(session_factory, llm_stub):
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_llm_adapter] = lambda: llm_stub

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
