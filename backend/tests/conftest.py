"""
Test configuration and fixtures.

Importing agency_portal.main is deferred to the client fixture so service-level
tests only need db_session and the model factories.
"""
from contextlib import nullcontext
from datetime import date

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from agency_portal.auth import create_access_token, get_password_hash
from agency_portal.db import Base, get_db
from agency_portal.models import Client, ContractTemplate, Project, Role, TemplateType, User
from agency_portal.services import audit_log  # noqa: F401  registers the log immutability listeners
from agency_portal.services.pdf_cache import MemoryPdfCache
from agency_portal.services.storage import LocalDiskStorage

# 1x1 transparent PNG
PNG_DATA_URL = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)

# Test database URL (in-memory SQLite)
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class RecordingSender:
    """Notification sender that keeps every message instead of sending it."""

    def __init__(self, succeed: bool = True):
        self.succeed = succeed
        self.sent = []

    def send(self, to, subject, text, html=None):
        self.sent.append({"to": to, "subject": subject, "text": text, "html": html})
        if self.succeed:
            return {"success": True, "message": "recorded"}
        return {"success": False, "message": "delivery failed"}

    def subjects(self):
        return [message["subject"] for message in self.sent]


@pytest.fixture(scope="function")
def db_session():
    """Create a fresh database session for each test."""
    Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def storage(tmp_path):
    return LocalDiskStorage(str(tmp_path / "uploads"))


@pytest.fixture
def pdf_cache():
    return MemoryPdfCache(ttl_seconds=300, max_entries=100)


@pytest.fixture
def notifier():
    return RecordingSender()


@pytest.fixture(scope="function")
def client(db_session, storage, pdf_cache, notifier):
    """Create a test client with database session and collaborator overrides."""
    from fastapi.testclient import TestClient

    from agency_portal import deps
    from agency_portal.main import app
    from agency_portal.rate_limit import limiter

    def override_get_db():
        try:
            yield db_session
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[deps.get_storage] = lambda: storage
    app.dependency_overrides[deps.get_cache] = lambda: pdf_cache
    app.dependency_overrides[deps.get_notifier] = lambda: notifier
    app.dependency_overrides[deps.get_session_factory] = lambda: (lambda: nullcontext(db_session))
    limiter.reset()
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _make_user(db_session, email, role, client_id=None):
    user = User(
        email=email,
        name=email.split("@")[0].title(),
        password_hash=get_password_hash("secret123"),
        role=role,
        client_id=client_id,
        is_active=True,
    )
    db_session.add(user)
    db_session.commit()
    db_session.refresh(user)
    return user


@pytest.fixture
def admin_user(db_session):
    return _make_user(db_session, "admin@test.com", Role.ADMIN)


@pytest.fixture
def manager_user(db_session):
    return _make_user(db_session, "manager@test.com", Role.MANAGER)


@pytest.fixture
def consultant_user(db_session):
    return _make_user(db_session, "consultant@test.com", Role.CONSULTANT)


@pytest.fixture
def acme_client(db_session):
    record = Client(
        contact_name="Jane Doe",
        company_name="Acme",
        email="jane@acme.test",
        phone="555-0100",
    )
    db_session.add(record)
    db_session.commit()
    db_session.refresh(record)
    return record


@pytest.fixture
def client_user(db_session, acme_client):
    return _make_user(db_session, "jane@acme.test", Role.CLIENT, client_id=acme_client.id)


@pytest.fixture
def project(db_session, acme_client):
    record = Project(
        client_id=acme_client.id,
        project_name="Redesign",
        project_type="Website",
        description="Marketing site redesign",
        start_date=date(2026, 1, 5),
        due_date=date(2026, 3, 1),
        timeline="8 weeks",
        price=1234.0,
        deposit_amount=617.0,
    )
    db_session.add(record)
    db_session.commit()
    db_session.refresh(record)
    return record


@pytest.fixture
def standard_template(db_session):
    template = ContractTemplate(
        name="Standard",
        type=TemplateType.STANDARD,
        content="Agreement for {{client.name}} on {{project.name}} at {{project.price}}.",
        variables=["client.name", "project.name", "project.price"],
        is_default=True,
        is_active=True,
    )
    db_session.add(template)
    db_session.commit()
    db_session.refresh(template)
    return template


def bearer(user):
    return {"Authorization": f"Bearer {create_access_token(data={'sub': user.email})}"}


@pytest.fixture
def admin_headers(admin_user):
    return bearer(admin_user)


@pytest.fixture
def manager_headers(manager_user):
    return bearer(manager_user)


@pytest.fixture
def consultant_headers(consultant_user):
    return bearer(consultant_user)


@pytest.fixture
def client_headers(client_user):
    return bearer(client_user)


@pytest.fixture
def signature_image():
    return PNG_DATA_URL
