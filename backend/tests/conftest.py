import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTH_DISABLED"] = "false"

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models
from database import get_db, get_session_factory
from main import app
from security import create_access_token
from webhook_service import WebhookSender, get_webhook_sender

engine = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

ADMIN_ID = "11111111-1111-1111-1111-111111111111"
STAFF_ID = "22222222-2222-2222-2222-222222222222"
ATTENDEE_ID = "33333333-3333-3333-3333-333333333333"


def auth_headers(user_id: str = ADMIN_ID, role: str = "admin") -> dict:
    token = create_access_token({"sub": user_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def db_session():
    models.Base.metadata.create_all(bind=engine)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()
        models.Base.metadata.drop_all(bind=engine)


@pytest.fixture
def webhook_requests():
    return []


@pytest.fixture
def webhook_status():
    """Mutable status code returned by the fake webhook receiver."""
    return {"code": 200}


@pytest.fixture
def webhook_sender(webhook_requests, webhook_status):
    def handler(request: httpx.Request) -> httpx.Response:
        webhook_requests.append(request)
        return httpx.Response(webhook_status["code"], text="ok")

    return WebhookSender(client=httpx.Client(transport=httpx.MockTransport(handler)))


@pytest.fixture
def client(db_session, webhook_sender):
    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: TestingSessionLocal
    app.dependency_overrides[get_webhook_sender] = lambda: webhook_sender
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def festival(db_session):
    festival = models.Festival(id=models.new_id(), name="Summer Sound", currency_name="Griffons", exchange_rate=0.5)
    db_session.add(festival)
    db_session.commit()
    db_session.refresh(festival)
    return festival
