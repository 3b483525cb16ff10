import asyncio
import hashlib
from pathlib import Path

import jwt
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import NullPool

from specimen_ingest.core.config import get_settings
from specimen_ingest.core.db import create_engine, create_schema, create_session_factory, drop_schema
from specimen_ingest.db.models import Specimen
from specimen_ingest.main import create_app


TEST_SECRET = "test-secret"
TEST_ISSUER = "specimens-test"
TEST_AUDIENCE = "specimens"
FLUSH_THRESHOLD = 8


def pytest_configure(config):
    config.addinivalue_line(
        "markers",
        "no_default_env: disable the default environment bootstrap fixture for tests that manage their own .env",
    )


@pytest.fixture(autouse=True)
def configure_environment(request, monkeypatch, tmp_path):
    if request.node.get_closest_marker("no_default_env"):
        get_settings.cache_clear()
        yield
        get_settings.cache_clear()
        return
    db_path = tmp_path / "specimens_test.db"
    blob_root = tmp_path / "blobs"

    monkeypatch.setenv("SPECIMENS_ENV", "test")
    monkeypatch.setenv("SPECIMENS_LOG_LEVEL", "debug")
    monkeypatch.setenv("SPECIMENS_DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("SPECIMENS_STORAGE_BACKEND", "local")
    monkeypatch.setenv("SPECIMENS_LOCAL_STORAGE_BASE_PATH", str(blob_root))
    monkeypatch.setenv("SPECIMENS_UPLOAD_FLUSH_THRESHOLD_BYTES", str(FLUSH_THRESHOLD))
    monkeypatch.setenv("SPECIMENS_TUS_PART_SIZE_BYTES", str(FLUSH_THRESHOLD))
    monkeypatch.setenv("SPECIMENS_MAX_CHUNK_SIZE_BYTES", "64")
    monkeypatch.setenv("SPECIMENS_TUS_MAX_SIZE_BYTES", "1024")
    monkeypatch.setenv("SPECIMENS_JWT_SECRET", TEST_SECRET)
    monkeypatch.setenv("SPECIMENS_JWT_ISSUER", TEST_ISSUER)
    monkeypatch.setenv("SPECIMENS_JWT_AUDIENCE", TEST_AUDIENCE)

    get_settings.cache_clear()
    settings = get_settings()
    engine = create_engine(settings)

    async def _setup() -> None:
        await create_schema(engine)
        await engine.dispose()

    asyncio.run(_setup())

    yield

    async def _teardown() -> None:
        await drop_schema(engine)
        await engine.dispose()

    asyncio.run(_teardown())
    get_settings.cache_clear()


@pytest.fixture()
def client(configure_environment):
    app = create_app()
    with TestClient(app) as client:
        yield client


@pytest.fixture()
def session_factory(configure_environment):
    """Yields a factory for async sessions bound to the per-test database."""
    engine = create_async_engine(get_settings().database_url, poolclass=NullPool)
    yield create_session_factory(engine)
    asyncio.run(engine.dispose())


def run(coro):
    return asyncio.run(coro)


def build_token(*, scopes: list[str] | None = None, user_id: str | None = None) -> str:
    payload: dict[str, object] = {"iss": TEST_ISSUER, "aud": TEST_AUDIENCE}
    if scopes:
        payload["scopes"] = scopes
    if user_id:
        payload["sub"] = user_id
    return jwt.encode(payload, TEST_SECRET, algorithm="HS256")


@pytest.fixture()
def upload_headers() -> dict[str, str]:
    token = build_token(scopes=["uploads"], user_id="curator-1")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def reader_headers() -> dict[str, str]:
    token = build_token(user_id="reader-1")
    return {"Authorization": f"Bearer {token}"}


def seed_specimen(code: str = "SPC-0001") -> tuple[int, str]:
    """Insert a specimen row directly; the specimen CRUD surface lives elsewhere."""

    async def _insert() -> int:
        engine = create_engine(get_settings())
        try:
            async with create_session_factory(engine)() as session:
                specimen = Specimen(specimen_code=code)
                session.add(specimen)
                await session.commit()
                return specimen.id
        finally:
            await engine.dispose()

    return asyncio.run(_insert()), code


@pytest.fixture()
def specimen(configure_environment) -> tuple[int, str]:
    return seed_specimen()


def md5_hex(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


def blob_root() -> Path:
    return Path(get_settings().local_storage_base_path)
