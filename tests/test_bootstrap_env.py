from __future__ import annotations

import asyncio
import hashlib
import os
from pathlib import Path

import jwt
import pytest
from fastapi.testclient import TestClient

from specimen_ingest.core.config import get_settings
from specimen_ingest.core.db import create_engine, create_session_factory
from specimen_ingest.db.models import Specimen
from specimen_ingest.main import create_app

DEV_SECRET = "dev-secret"
DEV_AUDIENCE = "specimens"
DEV_ISSUER = "specimens-local"


pytestmark = pytest.mark.no_default_env


def _write_env(target_dir: Path, *, environment: str) -> Path:
    target_dir.mkdir(parents=True, exist_ok=True)
    env_text = f"""
SPECIMENS_ENV={environment}
SPECIMENS_LOG_LEVEL=debug
SPECIMENS_JWT_SECRET={DEV_SECRET}
SPECIMENS_JWT_ISSUER={DEV_ISSUER}
SPECIMENS_JWT_AUDIENCE={DEV_AUDIENCE}
SPECIMENS_STORAGE_BACKEND=local
SPECIMENS_LOCAL_STORAGE_BASE_PATH=blobs
SPECIMENS_DB_URL=sqlite+aiosqlite:///./specimens.db
SPECIMENS_AUTO_CREATE_SCHEMA=true
""".strip()
    env_path = target_dir / ".env"
    env_path.write_text(env_text)
    return env_path


def _prepare_app(tmp_path: Path, monkeypatch: pytest.MonkeyPatch, *, environment: str) -> TestClient:
    _write_env(tmp_path, environment=environment)
    for key in list(os.environ.keys()):
        if key.startswith("SPECIMENS_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    get_settings.cache_clear()
    app = create_app()
    client = TestClient(app)
    client.__enter__()
    return client


def _seed_specimen(code: str) -> None:
    async def _insert() -> None:
        engine = create_engine(get_settings())
        async with create_session_factory(engine)() as session:
            session.add(Specimen(specimen_code=code))
            await session.commit()
        await engine.dispose()

    asyncio.run(_insert())


@pytest.fixture(autouse=True)
def clear_settings_cache():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_env_boots_without_shell_exports(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    client = _prepare_app(tmp_path, monkeypatch, environment="development")
    try:
        response = client.get("/v1/health")
        assert response.status_code == 200
        assert response.json()["status"] == "ok"
        assert (tmp_path / "blobs").is_dir()
    finally:
        client.__exit__(None, None, None)


def test_dev_token_endpoint_only_in_dev(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    client = _prepare_app(tmp_path, monkeypatch, environment="development")
    try:
        payload = {"scopes": ["uploads"], "user_id": "user-1"}
        response = client.post("/v1/admin/dev-token", json=payload)
        assert response.status_code == 200
        token = response.json()["token"]
        decoded = jwt.decode(
            token,
            DEV_SECRET,
            algorithms=["HS256"],
            audience=DEV_AUDIENCE,
            issuer=DEV_ISSUER,
        )
        assert decoded["scopes"] == ["uploads"]
        assert decoded.get("sub") == payload["user_id"]
    finally:
        client.__exit__(None, None, None)

    prod_client = _prepare_app(tmp_path / "prod", monkeypatch, environment="production")
    try:
        response = prod_client.post("/v1/admin/dev-token", json={})
        assert response.status_code == 403
    finally:
        prod_client.__exit__(None, None, None)


def test_production_refuses_default_secret(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.chdir(tmp_path)
    for key in list(os.environ.keys()):
        if key.startswith("SPECIMENS_"):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("SPECIMENS_ENVIRONMENT", "production")
    with pytest.raises(ValueError):
        get_settings()


def test_request_with_dev_token_succeeds(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    client = _prepare_app(tmp_path, monkeypatch, environment="development")
    try:
        _seed_specimen("SPC-DEV")
        token_resp = client.post("/v1/admin/dev-token", json={"user_id": "curator"})
        assert token_resp.status_code == 200
        headers = {"Authorization": f"Bearer {token_resp.json()['token']}"}

        resp = client.post(
            "/v1/specimens/SPC-DEV/uploads",
            json={"contentType": "image/jpeg", "contentHash": hashlib.md5(b"sample-data").hexdigest()},
            headers=headers,
        )
        assert resp.status_code == 201, resp.text

        reader_token = client.post("/v1/admin/dev-token", json={"scopes": ["read"]}).json()["token"]
        denied = client.post(
            "/v1/specimens/SPC-DEV/uploads",
            json={"contentType": "image/jpeg", "contentHash": hashlib.md5(b"other").hexdigest()},
            headers={"Authorization": f"Bearer {reader_token}"},
        )
        assert denied.status_code == 403
    finally:
        client.__exit__(None, None, None)
