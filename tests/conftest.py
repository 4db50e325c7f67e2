"""Shared test fixtures and configuration for pytest."""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio

from taskloop import db
from taskloop.models import Project, Task

from fakes import BroadcastRecorder, FakeAdapter, FakeNotifier


@pytest.fixture
def database_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'taskloop.db'}"


@pytest_asyncio.fixture
async def database(database_url: str) -> AsyncGenerator[db.Database]:
    database = db.Database(database_url, echo=False)
    await database.init_db()
    yield database
    await database.dispose()


@pytest.fixture
def repo_path(tmp_path: Path) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    return repo


@pytest_asyncio.fixture
async def project(database: db.Database, repo_path: Path) -> Project:
    async with database.session() as session:
        return await db.create_project(session, 7, "Demo", str(repo_path))


@pytest_asyncio.fixture
async def task(database: db.Database, project: Project) -> Task:
    async with database.session() as session:
        return await db.create_task(session, project.id, "Add login")


@pytest.fixture
def adapter() -> FakeAdapter:
    return FakeAdapter()


@pytest.fixture
def broadcast() -> BroadcastRecorder:
    return BroadcastRecorder()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()
