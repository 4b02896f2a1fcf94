import os

# keep the module-level app off the local database file
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CORS_ORIGINS", "http://testserver")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

import models  # noqa: F401  (registers tables on Base)
from auth import create_wallet_token
from config import Settings
from database import Base, get_db, make_engine
from main import create_app
from services import build_services
from wallet import LocalWallet

MINER_SEED = b"\x11" * 32
RENTER_SEED = b"\x22" * 32


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite://", poolclass=StaticPool)
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def test_settings():
    return Settings(
        DATABASE_URL="sqlite://",
        CONFIRM_TIMEOUT_SECONDS=2.0,
        CONFIRM_POLL_SECONDS=0.0,
        CATALOG_POLL_SECONDS=60.0,
    )


@pytest.fixture
def miner():
    return LocalWallet.from_seed(MINER_SEED)


@pytest.fixture
def renter():
    return LocalWallet.from_seed(RENTER_SEED)


@pytest.fixture
def services(test_settings, session_factory, renter):
    svc = build_services(test_settings, session_factory)
    svc.wallets.add(renter)
    return svc


@pytest.fixture
def client(services, session_factory):
    app = create_app(services)

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as c:
        yield c


@pytest.fixture
def renter_headers(renter):
    return {"Authorization": f"Bearer {create_wallet_token(renter.address)}"}
