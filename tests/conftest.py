import asyncio
from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from media_pipeline.core import metrics
from media_pipeline.core.config import settings
from media_pipeline.db.base import Base
from media_pipeline.db.session import get_session, get_session_factory
from media_pipeline.main import app
from media_pipeline.models import MediaActivityEvent, MediaAsset, ModuleInstance, Post, PostModule  # noqa: F401


@pytest.fixture(scope="module")
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
def _reset_metrics() -> Generator[None, None, None]:
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture
def media_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    root = tmp_path / "uploads"
    monkeypatch.setattr(settings, "media_root", str(root))
    monkeypatch.setattr(settings, "media_bulk_concurrency", 1)
    return root


@pytest.fixture
def session_factory(media_root: Path) -> Generator[async_sessionmaker[AsyncSession], None, None]:
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    SessionLocal = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)

    async def init_models() -> None:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(init_models())
    yield SessionLocal
    asyncio.run(engine.dispose())


@pytest.fixture
def test_app(session_factory: async_sessionmaker[AsyncSession]) -> Generator[dict[str, object], None, None]:
    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    client = TestClient(app)
    yield {"client": client, "session_factory": session_factory}
    client.close()
    app.dependency_overrides.clear()
