"""Shared test fixtures: in-memory database, object archive, mocked archive client."""
import os

# Must be set before secure_entry.config is imported anywhere.
os.environ.setdefault("DATABASE_URL", "sqlite://")

import uuid
from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from secure_entry.config import Settings
from secure_entry.database import FULL_CAPABILITIES, init_db
from secure_entry.models.base import utcnow
from secure_entry.modules.archive_client import ArchiveClient, DeleteReply, SyncReply
from secure_entry.modules.normalize import normalize_key
from secure_entry.modules.object_archive import LocalObjectArchive
from secure_entry.modules.record_store import RecordStore
from secure_entry.modules.search_resolver import SearchCache


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(db):
    return RecordStore(db, FULL_CAPABILITIES)


@pytest.fixture
def objects(tmp_path):
    return LocalObjectArchive(tmp_path / "objects")


@pytest.fixture
def test_settings(tmp_path):
    """Fully configured settings; tests derive variants with model_copy(update=...)."""
    return Settings(
        _env_file=None,
        DATABASE_URL="sqlite://",
        OBJECT_STORE_DIR=str(tmp_path / "objects"),
        ARCHIVE_SYNC_URL="https://archive.example/exec",
        SYNC_TOKEN="sync-secret",
        PUBLIC_BASE_URL="https://entry.example",
        IMAGE_VIEW_TOKEN="view-token",
        ARCHIVE_RETRY_DELAYS=[],
        SYNC_WORKERS=1,
    )


@pytest.fixture
def archive():
    """ArchiveClient mock; every sync succeeds and every delete is confirmed."""
    client = MagicMock(spec=ArchiveClient)
    client.sync_entry.return_value = SyncReply(
        file_id="file-1", url="https://drive.example/file-1"
    )
    client.delete_files.side_effect = lambda ids: DeleteReply(deleted=list(ids))
    client.search.return_value = None
    return client


@pytest.fixture
def make_entry(store):
    """Insert an entry row directly and return its id."""
    def _make(**overrides):
        entry_id = overrides.pop("id", None) or str(uuid.uuid4())
        values = {
            "id": entry_id,
            "created_at": utcnow(),
            "client_txn_id": f"txn-{entry_id}",
            "device_id": "KIOSK-1",
            "name": "ALI BIN ABU",
            "doc_no": "",
            "reg_no": "",
            "contact": "0123456789",
            "remark": "VISITOR",
            "unit_no": "",
            "tower": "A",
            "reason": "DELIVERY",
            "reason_other": "",
            "image_key": None,
            "image_sha256": None,
            "external_file_id": "",
            "external_url": "",
            "sync_status": "PENDING",
            "sync_attempts": 0,
            "sync_error": "",
        }
        values.update(overrides)
        values["reg_norm"] = normalize_key(values["reg_no"])
        values["id_norm"] = normalize_key(values["doc_no"])
        store.insert(values)
        return entry_id

    return _make


@pytest.fixture
def days_ago():
    now = utcnow()
    return lambda n: now - timedelta(days=n)


@pytest.fixture
def search_cache():
    """Disabled cache so consecutive searches see fresh state."""
    return SearchCache(0)


@pytest.fixture
def api_client(session_factory, objects, archive, test_settings, search_cache):
    """TestClient wired to the in-memory database and the mocked archive."""
    from secure_entry.api import routes
    from secure_entry.database import get_db, get_session_factory
    from secure_entry.main import app, limiter

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[routes.get_settings] = lambda: test_settings
    app.dependency_overrides[routes.get_capabilities] = lambda: FULL_CAPABILITIES
    app.dependency_overrides[routes.get_object_archive] = lambda: objects
    app.dependency_overrides[routes.get_archive_client] = lambda: archive
    app.dependency_overrides[routes.get_search_cache] = lambda: search_cache
    limiter.enabled = False
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
    limiter.enabled = True
