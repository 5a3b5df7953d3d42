import os

# Must be set before main/database are imported
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["ANTHROPIC_API_KEY"] = ""

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import main
from database import Agency, Base, Citation, Client, Directory, User, get_db, make_engine


class FakeAdvisor:
    """Stands in for AdvisoryClient; records every prompt it is sent."""

    configured = True

    def __init__(self, reply: str = "", error: Exception = None):
        self.reply = reply
        self.error = error
        self.calls = []

    async def complete(self, prompt: str, max_tokens: int) -> str:
        self.calls.append({"prompt": prompt, "max_tokens": max_tokens})
        if self.error is not None:
            raise self.error
        return self.reply


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    engine.dispose()


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def advisor():
    return FakeAdvisor()


@pytest.fixture
def api(session_factory, advisor):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    main.app.dependency_overrides[get_db] = _get_db
    main.app.dependency_overrides[main.get_advisory_client] = lambda: advisor
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def register(api, email="owner@agency.co.uk", agency_name="North West SEO"):
    resp = api.post("/auth/register", json={
        "email": email, "password": "s3cret-pass", "agency_name": agency_name,
    })
    assert resp.status_code == 201, resp.text
    data = resp.json()
    return {"Authorization": f"Bearer {data['access_token']}"}, data["agency_id"]


@pytest.fixture
def agency(api):
    """(auth headers, agency id) for a freshly registered agency."""
    return register(api)


def make_agency(db, email="other@agency.co.uk", name="Other Agency") -> Agency:
    user = User(email=email, hashed_password="x")
    db.add(user)
    db.flush()
    agency = Agency(user_id=user.id, name=name)
    db.add(agency)
    db.commit()
    return agency


def make_client(db, agency_id, **overrides) -> Client:
    fields = {
        "business_name": "ABC Plumbing",
        "category": "Plumber",
        "city": "Manchester",
        "postcode": "M1 1AE",
        "citation_score": 62,
    }
    fields.update(overrides)
    client = Client(agency_id=agency_id, **fields)
    db.add(client)
    db.commit()
    return client


def make_catalog(db) -> list[Directory]:
    directories = [
        Directory(name="Google Business Profile", tier=1, domain_authority=100,
                  categories=["general"], automation_level="manual", is_free=True, uk_only=False),
        Directory(name="Yell", tier=1, domain_authority=77,
                  categories=["general"], automation_level="semi", is_free=True, uk_only=True),
        Directory(name="Checkatrade", tier=2, domain_authority=62,
                  categories=["plumber", "electrician"], automation_level="manual", is_free=False, uk_only=True),
        Directory(name="Yelp UK", tier=2, domain_authority=93,
                  categories=["general", "restaurant"], automation_level="manual", is_free=True, uk_only=False),
        Directory(name="NHS Find a Dentist", tier=2, domain_authority=92,
                  categories=["dentist"], automation_level="manual", is_free=True, uk_only=True),
    ]
    db.add_all(directories)
    db.commit()
    return directories


def add_citations(db, client, directories, statuses) -> list[Citation]:
    citations = [
        Citation(client_id=client.id, directory_id=d.id, status=s)
        for d, s in zip(directories, statuses)
    ]
    db.add_all(citations)
    db.commit()
    return citations
