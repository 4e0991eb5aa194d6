"""Pytest configuration and shared fixtures."""

import itertools
import os
from decimal import Decimal

import pytest

from scribedesk.config import Settings
from scribedesk.marketplace import Marketplace
from scribedesk.pricing import PricingRule
from scribedesk.store import SQLiteStore


@pytest.fixture(scope="session", autouse=True)
def _isolate_sqlite_db(tmp_path_factory):
    """Ensure tests use an isolated SQLite DB path and never the production DB."""
    db_dir = tmp_path_factory.mktemp("scribedesk_db")
    os.environ["SCRIBEDESK_DB_PATH"] = str(db_dir / "tests.sqlite")
    yield


@pytest.fixture
def store(tmp_path):
    return SQLiteStore(db_path=str(tmp_path / "market.sqlite"))


@pytest.fixture
def pricing_rules():
    return [
        PricingRule(price_per_minute=Decimal("1.00"), name="base"),
        PricingRule(price_per_minute=Decimal("1.50"), name="urgent", deadline_type="urgent"),
        PricingRule(
            price_per_minute=Decimal("2.25"),
            name="difficult verbatim",
            audio_quality="difficult",
            special_requirements=["full_verbatim"],
        ),
    ]


@pytest.fixture
def market(store, pricing_rules):
    return Marketplace(store, Settings(db_path=store.db_path), pricing_rules=pricing_rules)


_emails = itertools.count(1)


@pytest.fixture
def make_client(market):
    def _make(name="Client"):
        return market.register_participant("client", name, f"client{next(_emails)}@example.com").participant_id

    return _make


@pytest.fixture
def make_admin(market):
    def _make(name="Admin"):
        return market.register_participant("admin", name, f"admin{next(_emails)}@example.com").participant_id

    return _make


@pytest.fixture
def make_transcriber(market, make_admin):
    """Register a transcriber; active and online unless told otherwise.

    ``rating`` is given by a fresh admin so the transcriber's average equals it.
    """

    def _make(name="Transcriber", online=True, vetting="active", rating=None):
        tid = market.register_participant(
            "transcriber", name, f"transcriber{next(_emails)}@example.com", vetting_status=vetting
        ).participant_id
        if online:
            market.set_online(tid, True)
        if rating is not None:
            market.rate(make_admin(), "admin", tid, "transcriber", rating)
        return tid

    return _make


@pytest.fixture
def client_id(make_client):
    return make_client()


@pytest.fixture
def direct_job(market, client_id):
    """An open, unrestricted direct-upload job priced at 100.00 USD."""

    def _make(price="100.00", restricted=False, owner=None):
        return market.submit_direct_upload(
            owner or client_id,
            "Interview, two speakers",
            price=price,
            deadline_hours=24,
            currency="USD",
            restricted=restricted,
        )

    return _make
