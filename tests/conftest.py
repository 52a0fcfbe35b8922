import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from stamp_engine import config
from stamp_engine.db import Base, get_db
from stamp_engine.deps.wallet import get_session_factory, get_wallet_client
from stamp_engine.main import app
from stamp_engine.services import program_service
from stamp_engine.services.wallet_pass_service import IssuedPass


CITY = "bristol"
BUSINESS_ID = "biz-coffee-1"
ADMIN_ID = "admin-1"

WALLETPUSH_CREDENTIALS = {
    "walletpush_template_id": "tpl_123",
    "walletpush_api_key": "wp_live_key",
    "walletpush_pass_type_id": "pass.com.example.loyalty",
}


class FakeWalletClient:
    """Enregistre les appels au lieu de parler à WalletPush."""

    def __init__(self, *, fail_updates: bool = False, issue: bool = True):
        self.fail_updates = fail_updates
        self.issue = issue
        self.issued = []
        self.updates = []

    def issue_pass(self, program, member, initial_fields):
        self.issued.append({"program_id": program.id, "member": member, "fields": initial_fields})
        if not self.issue:
            return None
        serial = f"serial-{len(self.issued)}"
        return IssuedPass(
            serial=serial,
            apple_url=f"https://wallet.example/api/apple-pass/{serial}/download",
            google_url=f"https://pay.google.example/save/{serial}",
        )

    def update_pass_field(self, program, serial, field_name, value, push=False):
        self.updates.append((serial, field_name, value, push))
        return not self.fail_updates


@pytest.fixture(autouse=True)
def _no_slack(monkeypatch):
    monkeypatch.setattr(config, "SLACK_WEBHOOK_URL", None)


@pytest.fixture
def engine(tmp_path):
    # fichier plutôt que :memory: pour ouvrir plusieurs sessions concurrentes
    eng = create_engine(
        f"sqlite:///{tmp_path / 'stamp_engine_test.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=eng)
    try:
        yield eng
    finally:
        eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def wallet_client():
    return FakeWalletClient()


@pytest.fixture
def client(session_factory, wallet_client):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_wallet_client] = lambda: wallet_client
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


def make_active_program(db, *, business_id=BUSINESS_ID, city=CITY, **fields):
    values = {"reward_description": "Free coffee", "reward_threshold": 10, "min_gap_minutes": 0, "max_earns_per_day": 10}
    values.update(fields)
    program_service.create_draft(
        db,
        business_id=business_id,
        business_name="Corner Coffee",
        city=city,
        fields=values,
    )
    req = program_service.submit_for_provisioning(db, business_id=business_id, city=city)
    return program_service.activate_request(
        db,
        request_id=req.id,
        credentials=WALLETPUSH_CREDENTIALS,
        admin_id=ADMIN_ID,
        admin_city=city,
    )


@pytest.fixture
def active_program(db):
    return make_active_program(db)


def business_headers(business_id=BUSINESS_ID, city=CITY):
    return {"X-Business-Id": business_id, "X-City": city}


def admin_headers(city=CITY):
    return {"X-Admin-Id": ADMIN_ID, "X-City": city}
