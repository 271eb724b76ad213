"""Global test configuration for the provisioning backend."""

import os

from cryptography.fernet import Fernet

# Settings and the Fernet key are read at import time, so the environment
# must be in place before any application module is imported.
_TEST_ENV = {
    "DATABASE_URL": "sqlite://",
    "ENCRYPTION_KEY": Fernet.generate_key().decode(),
    "GHL_API_DOMAIN": "https://ghl.test",
    "GHL_CLIENT_ID": "test-client-id",
    "GHL_CLIENT_SECRET": "test-client-secret",
    "GHL_COMPANY_ID": "agency-1",
    "GHL_SNAPSHOT_ID": "snapshot-1",
    "GHL_PARENT_LOCATION_ID": "template-loc",
    "GOOGLE_DRIVE_PARENT_FOLDER_ID": "drive-parent",
    "PROVISIONING_READY_TIMEOUT": "0.2",
    "PROVISIONING_POLL_INTERVAL": "0.01",
}
for _key, _value in _TEST_ENV.items():
    os.environ[_key] = _value

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from config import get_settings
from models.database import Base
import models.credentials  # noqa: F401
import models.provisioning  # noqa: F401
from services.credential_store import CredentialStore

from fakes import FakeDrive, FakeGHL


@pytest.fixture(autouse=True)
def _fresh_settings():
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def db_session():
    """In-memory SQLite session shared across threads."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture
def store(db_session):
    return CredentialStore(db_session)


@pytest.fixture
def agency_credential(store):
    return store.upsert("agency-1", {
        "access_token": "agency-access",
        "refresh_token": "agency-refresh",
        "expires_in": 86399,
        "userId": "user-1",
        "locationId": None,
    })


@pytest.fixture
def ghl():
    return FakeGHL()


@pytest.fixture
def drive():
    return FakeDrive()
