"""
Pytest configuration and fixtures for the lead import tests.

The suite runs against a throwaway SQLite database and an in-memory object
store. The environment is set before any ``leadflow`` module is imported so
``settings`` picks it up.
"""

import os
import tempfile

_TEST_DB_DIR = tempfile.mkdtemp(prefix="leadflow-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_TEST_DB_DIR, 'test.db')}"
os.environ["IMPORT_QUEUE_MODE"] = "inline"
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("SKIP_DB_INIT", "1")

from typing import Dict

import pytest
from sqlalchemy.orm import Session

from leadflow.core.security import create_access_token, create_user
from leadflow.db.session import Base, get_engine, init_db
from leadflow.domain.imports.progress import progress_channel


@pytest.fixture(scope="session", autouse=True)
def initialize_test_database():
    """Create every table once per test session."""
    init_db()
    yield


@pytest.fixture(autouse=True)
def clean_tables():
    """Empty all tables after each test so tests never see each other's rows."""
    yield
    engine = get_engine()
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    progress_channel._latest.clear()


class FakeStorage:
    """In-memory stand-in for the S3-compatible bucket."""

    def __init__(self):
        self.objects: Dict[str, bytes] = {}
        self.deleted = []

    def upload_file(self, file_content, file_path, content_type=None):
        self.objects[file_path] = bytes(file_content)
        return {"file_path": file_path, "etag": "fake-etag", "size": len(file_content)}

    def download_file_to_path(self, file_path, destination):
        from leadflow.integrations.storage import StorageDownloadError

        if file_path not in self.objects:
            raise StorageDownloadError(f"File not found: {file_path}")
        with open(destination, "wb") as handle:
            handle.write(self.objects[file_path])
        return destination

    def delete_file(self, file_path):
        self.deleted.append(file_path)
        return self.objects.pop(file_path, None) is not None

    def generate_presigned_download_url(self, file_path, expires_in=3600, filename=None):
        return f"https://storage.test/{file_path}?expires={expires_in}"


@pytest.fixture(autouse=True)
def fake_storage(monkeypatch):
    storage = FakeStorage()
    for name in ("upload_file", "download_file_to_path", "delete_file", "generate_presigned_download_url"):
        monkeypatch.setattr(f"leadflow.integrations.storage.{name}", getattr(storage, name))
    return storage


@pytest.fixture
def db_session():
    session = Session(get_engine())
    yield session
    session.close()


@pytest.fixture
def admin_user(db_session):
    return create_user(
        db=db_session,
        email="admin@example.com",
        password="Password123!",
        full_name="Alice Admin",
        role="admin",
    )


@pytest.fixture
def owners(db_session):
    """Two standard users leads can be assigned to."""
    return [
        create_user(
            db=db_session,
            email=f"{name.lower()}@example.com",
            password="Password123!",
            full_name=f"{name} Sales",
            role="user",
        )
        for name in ("Bob", "Carol")
    ]


@pytest.fixture
def auth_headers(admin_user):
    token = create_access_token({"sub": admin_user.email})
    return {"Authorization": f"Bearer {token}"}


