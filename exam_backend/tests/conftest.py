"""
Shared fixtures: in-memory database, fake redis, fresh app state and
pre-built accounts with bearer tokens.
"""
import fnmatch
import os

# Must be set before exam_backend.config is imported
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET_KEY"] = "test-access-secret"
os.environ["JWT_REFRESH_SECRET_KEY"] = "test-refresh-secret"

from datetime import date
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from exam_backend.database import get_db
from exam_backend.main import app
from exam_backend.orm.base import Base
from exam_backend.orm.student import Student
from exam_backend.orm.user import User, UserRole
from exam_backend.realtime.notification_hub import NotificationHub
from exam_backend.security.auth import create_access_token
from exam_backend.security.login_guard import LoginAttemptTracker, TokenBlocklist
from exam_backend.security.passwords import hash_password
from exam_backend.services.anti_cheat_service import AntiCheatService
from exam_backend.services.cache_service import CacheService
from exam_backend.services.ml_service import MLService

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
DEFAULT_PASSWORD = "Password123!"


class MockRedis:
    """In-process stand-in for redis.asyncio.Redis (string values only)."""

    def __init__(self):
        self.store = {}
        self.ttls = {}
        self.closed = False

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                self.ttls.pop(key, None)
                removed += 1
        return removed

    async def scan_iter(self, match=None):
        for key in list(self.store):
            if match is None or fnmatch.fnmatch(key, match):
                yield key

    async def aclose(self):
        self.closed = True


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest_asyncio.fixture
async def engine():
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_redis():
    return MockRedis()


@pytest.fixture
def login_clock():
    return FakeClock()


@pytest_asyncio.fixture
async def client(session_factory, mock_redis, login_clock) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.state.login_guard = LoginAttemptTracker(max_attempts=5, lockout_seconds=30 * 60, clock=login_clock)
    app.state.token_blocklist = TokenBlocklist()
    app.state.notification_hub = NotificationHub()
    app.state.cache = CacheService(client=mock_redis)
    app.state.anti_cheat = AntiCheatService()
    app.state.ml = MLService()

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as test_client:
        yield test_client

    app.dependency_overrides.clear()


# ================= ACCOUNTS =================

async def create_user(
    session_factory,
    email: str,
    role: UserRole,
    password: str = DEFAULT_PASSWORD,
    must_change_password: bool = False,
    name: str = "Test User",
) -> User:
    async with session_factory() as session:
        user = User(
            name=name,
            email=email,
            password_hash=hash_password(password),
            role=role,
            must_change_password=must_change_password,
        )
        session.add(user)
        await session.commit()
        await session.refresh(user)
        return user


async def create_student_account(
    session_factory,
    email: str,
    must_change_password: bool = False,
    grade_level: str = "5A",
    name: str = "Ana",
    last_name: str = "Torres",
):
    user = await create_user(
        session_factory, email, UserRole.student,
        must_change_password=must_change_password, name=f"{name} {last_name}",
    )
    async with session_factory() as session:
        student = Student(
            user_id=user.id,
            name=name,
            last_name=last_name,
            email=email,
            date_of_birth=date(2010, 5, 17),
            grade_level=grade_level,
        )
        session.add(student)
        await session.commit()
        await session.refresh(student)
    return user, student


def auth_headers(user: User) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user)}"}


@pytest_asyncio.fixture
async def super_admin(session_factory) -> User:
    return await create_user(session_factory, "root@school.edu", UserRole.super_admin, name="Root Admin")


@pytest_asyncio.fixture
async def admin(session_factory) -> User:
    return await create_user(session_factory, "admin@school.edu", UserRole.admin, name="Site Admin")


@pytest_asyncio.fixture
async def teacher(session_factory) -> User:
    return await create_user(session_factory, "teacher@school.edu", UserRole.teacher, name="Teacher One")


@pytest_asyncio.fixture
async def student(session_factory) -> User:
    user, _ = await create_student_account(session_factory, "student@school.edu")
    return user


@pytest_asyncio.fixture
async def student_profile(session_factory, student) -> Student:
    async with session_factory() as session:
        result = await session.execute(select(Student).where(Student.user_id == student.id))
        return result.scalars().one()


@pytest.fixture
def admin_headers(admin):
    return auth_headers(admin)


@pytest.fixture
def super_admin_headers(super_admin):
    return auth_headers(super_admin)


@pytest.fixture
def teacher_headers(teacher):
    return auth_headers(teacher)


@pytest.fixture
def student_headers(student):
    return auth_headers(student)


# ================= CONTENT =================

ALGEBRA_QUESTION = {
    "subject_id": "math",
    "subcategory_id": "algebra",
    "type": "multiple_choice",
    "content": "Solve 2x + 3 = 7",
    "options": ["x = 1", "x = 2", "x = 3"],
    "correct_answer": "x = 2",
    "points": 10,
    "difficulty": 2,
    "explanation": "Subtract 3, then divide by 2",
}


async def create_question(client: AsyncClient, headers: dict, **overrides) -> dict:
    payload = {**ALGEBRA_QUESTION, **overrides}
    response = await client.post("/api/questions", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()


async def create_exam(client: AsyncClient, headers: dict, question_ids, **overrides) -> dict:
    payload = {
        "title": "Algebra quiz",
        "subject_id": "math",
        "duration_minutes": 30,
        "question_ids": list(question_ids),
        **overrides,
    }
    response = await client.post("/api/education/exams", json=payload, headers=headers)
    assert response.status_code == 201, response.text
    return response.json()
