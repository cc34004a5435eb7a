"""
Shared fixtures: an in-memory database rebuilt per test, a TestClient, and
a factory for accounts in every role and verification state.
"""

import itertools
import os
import tempfile
from io import BytesIO
from types import SimpleNamespace

# Must be set before any application module reads its configuration
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="donormatch-uploads-")
os.environ["LOG_LEVEL"] = "WARNING"

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from auth import get_password_hash, issue_token_for
from database import Base, SessionLocal, engine
from file_utils import ensure_directories
from main import app
from models import Institution, Investor, Profile
from websocket_manager import manager as ws_manager

PASSWORD = "password123"


@pytest.fixture(autouse=True)
def fresh_database():
    Base.metadata.create_all(bind=engine)
    ensure_directories()
    yield
    Base.metadata.drop_all(bind=engine)
    ws_manager.active_connections.clear()
    ws_manager.subscriptions.clear()
    ws_manager.connection_count = 0


@pytest.fixture()
def client():
    return TestClient(app)


@pytest.fixture()
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def make_account():
    """Create a profile (and its institution/investor row) and return its ids and auth headers."""
    counter = itertools.count(1)

    def _make(user_type="investor", status="verified", name=None, investor_type="individual",
              register=True):
        n = next(counter)
        session = SessionLocal()
        try:
            profile = Profile(
                email=f"{user_type}{n}@donormatch.org",
                hashed_password=get_password_hash(PASSWORD),
                full_name=f"{user_type.title()} Person {n}",
                user_type=user_type,
                verification_status=status,
            )
            session.add(profile)
            session.flush()

            entity_id = None
            if register and user_type == "institution":
                institution = Institution(
                    user_id=profile.id,
                    institution_name=name or f"Institution {n}",
                    country="Kenya",
                    city="Nairobi",
                    address=f"{n} Moi Avenue",
                    contact_person="Jane Doe",
                )
                session.add(institution)
                session.flush()
                entity_id = institution.id
            elif register and user_type == "investor":
                investor = Investor(user_id=profile.id, investor_type=investor_type, company_name=name)
                session.add(investor)
                session.flush()
                entity_id = investor.id

            session.commit()
            token = issue_token_for(profile)["access_token"]
            return SimpleNamespace(
                id=profile.id,
                email=profile.email,
                entity_id=entity_id,
                token=token,
                headers={"Authorization": f"Bearer {token}"},
            )
        finally:
            session.close()

    return _make


@pytest.fixture()
def png_bytes():
    buffer = BytesIO()
    Image.new("RGB", (20, 20), color=(200, 30, 30)).save(buffer, "PNG")
    return buffer.getvalue()
