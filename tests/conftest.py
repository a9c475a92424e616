"""Pytest configuration and fixtures for test suite."""

import os
import uuid
from datetime import date

import pytest

# Set test environment BEFORE any numericalz import; settings are read once
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("AUTO_CREATE_DB", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ.setdefault("RATE_LIMIT", "10000/minute")
os.environ.setdefault("COMPANIES_HOUSE_API_KEY", "test-key")

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from numericalz.db import Base
from numericalz.models.models import Client, User
from numericalz.auth.security import create_access_token, get_password_hash


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def _user(db, name, role, password="password123"):
    user = User(
        id=uuid.uuid4(),
        name=name,
        email=f"{name.lower().replace(' ', '.')}@numericalz.test",
        role=role,
        password_hash=get_password_hash(password),
        is_active=True,
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def staff(db):
    return _user(db, "Sam Staff", "STAFF")


@pytest.fixture
def manager(db):
    return _user(db, "Morgan Manager", "MANAGER")


@pytest.fixture
def partner(db):
    return _user(db, "Pat Partner", "PARTNER")


@pytest.fixture
def make_client(db):
    """Factory for clients; keyword arguments override the defaults."""
    counter = {"n": 0}

    def _make(**overrides):
        counter["n"] += 1
        data = {
            "client_code": f"NZ-{counter['n']}",
            "company_name": f"Client {counter['n']} Ltd",
            "company_number": f"{12345600 + counter['n']:08d}",
            "company_type": "LIMITED_COMPANY",
            "is_active": True,
        }
        data.update(overrides)
        client = Client(**data)
        db.add(client)
        db.commit()
        db.refresh(client)
        return client

    return _make


@pytest.fixture
def vat_client(make_client):
    return make_client(is_vat_enabled=True, vat_quarter_group="1")


@pytest.fixture
def ltd_client(make_client):
    return make_client(
        incorporation_date=date(2023, 3, 15),
        accounting_reference_day=31,
        accounting_reference_month=12,
    )


@pytest.fixture
def api(engine, session_factory):
    """TestClient bound to the test database."""
    from fastapi.testclient import TestClient
    from numericalz.main import app
    from numericalz.db import get_db, get_session_factory

    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(str(user.id), role=user.role)}"}


@pytest.fixture
def headers_for():
    return auth_headers


def ch_payload(number, **overrides):
    """Companies House company profile as returned by GET /company/{number}."""
    data = {
        "company_number": number,
        "company_name": f"COMPANY {number} LIMITED",
        "type": "ltd",
        "company_status": "active",
        "date_of_creation": "2023-03-15",
        "accounts": {
            "accounting_reference_date": {"day": "31", "month": "12"},
            "next_made_up_to": "2024-12-31",
            "next_due": "2025-09-30",
            "last_accounts": {"made_up_to": "2023-12-31"},
        },
        "confirmation_statement": {
            "next_due": "2025-03-29",
            "last_made_up_to": "2024-03-15",
        },
    }
    data.update(overrides)
    return data


@pytest.fixture
def registry_for():
    """
    Build a CompaniesHouseClient over httpx.MockTransport.

    ``responses`` maps company number to a payload dict, or to an int status
    code to answer with, or to a raw text body. Unknown numbers get a 404.
    """
    import httpx
    from numericalz.services.companies_house import CompaniesHouseClient

    def _make(responses):
        def handler(request: httpx.Request) -> httpx.Response:
            number = request.url.path.rsplit("/", 1)[-1]
            value = responses.get(number)
            if value is None:
                return httpx.Response(404, json={"errors": [{"error": "company-profile-not-found"}]})
            if isinstance(value, int):
                return httpx.Response(value, json={})
            if isinstance(value, str):
                return httpx.Response(200, text=value)
            return httpx.Response(200, json=value)

        return CompaniesHouseClient(api_key="test-key", base_url="https://ch.test", transport=httpx.MockTransport(handler))

    return _make


@pytest.fixture
def payload_for():
    return ch_payload
