import uuid

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from starlette.testclient import TestClient

from storefront.config import MerchantCredential
from storefront.database import get_db
from storefront.gateway_client import GatewayClient
from storefront.main import create_app
from storefront.models import Base
from tests.fixtures.merchant import (
    FAILURE_URL,
    MERCHANT_KEY,
    SHARED_SECRET,
    SUCCESS_URL,
)
from tests.helpers.gateway import FakeGateway


@pytest.fixture(scope="function")
def credential():
    """Sandbox credential with the gateway's public test key and salt."""
    return MerchantCredential(
        merchant_key=MERCHANT_KEY,
        shared_secret=SHARED_SECRET,
        environment="sandbox",
        success_url=SUCCESS_URL,
        failure_url=FAILURE_URL,
    )


@pytest.fixture(scope="function")
def fake_gateway():
    return FakeGateway()


@pytest.fixture(scope="function")
def gateway_client(credential, fake_gateway):
    """Gateway client whose HTTP traffic goes to the in-process fake gateway."""
    client = GatewayClient(
        credential,
        client=httpx.Client(transport=httpx.MockTransport(fake_gateway.handle)),
    )
    yield client
    client.close()


@pytest.fixture(scope="function")
def db_engine():
    """Create a fresh in-memory SQLite DB per test."""
    engine = create_engine(
        f"sqlite:///file:testdb_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture(scope="function")
def app(db_engine, credential, gateway_client):
    """Create a FastAPI app with isolated DB and fake gateway per test."""
    application = create_app(credential, gateway_client=gateway_client)
    SessionLocal = sessionmaker(bind=db_engine, autocommit=False, autoflush=False)

    def override_get_db():
        db = SessionLocal()
        try:
            yield db
        finally:
            db.close()

    application.dependency_overrides[get_db] = override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest.fixture(scope="function")
def client(app):
    """HTTP test client."""
    with TestClient(app, raise_server_exceptions=False) as c:
        yield c


@pytest.fixture(scope="function")
def db_session(db_engine):
    """Raw DB session for direct inspection/insertion."""
    SessionLocal = sessionmaker(bind=db_engine, autocommit=False, autoflush=False)
    db = SessionLocal()
    yield db
    db.close()

