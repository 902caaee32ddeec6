"""
Shared fixtures: one SQLite database file per test, a frozen clock, and a
scripted delivery transport.
"""
import pytest
import sys
import os
from datetime import datetime

# Add parent directory to path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from remit_engine.config import EngineSettings
from remit_engine.database import build_engine, build_session_factory, init_db
from remit_engine.models.domain import ChangeEvent, UploadResult
from remit_engine.services.configuration import ConfigurationRegistry
from remit_engine.services.context import build_context
from remit_engine.services.transports import DeliveryTransport
from remit_engine.utils.clock import FrozenClock


START = datetime(2026, 3, 2, 9, 0, 0)
PAYER = "ACME_HEALTH"
PAYEE = "CLINIC_ONE"


class ScriptedTransport(DeliveryTransport):
    """
    Records uploads. Each call consumes the next scripted outcome:
    True, False, an error message string, or an exception instance.
    Succeeds once the script runs out, unless default is set to False.
    """

    def __init__(self, outcomes=None, default=True):
        self.outcomes = list(outcomes or [])
        self.default = default
        self.calls = []

    def upload(self, content, file_name, destination):
        self.calls.append((file_name, destination))
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, Exception):
            raise outcome
        if outcome is True:
            return UploadResult(success=True, message="uploaded")
        if outcome is False:
            return UploadResult(success=False, message="connection refused")
        return UploadResult(success=False, message=outcome)


@pytest.fixture
def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'remit_engine.db'}")
    init_db(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FrozenClock(START)


@pytest.fixture
def settings():
    return EngineSettings(database_url="sqlite://", monitor_enabled=False)


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def make_context(session_factory, clock, transport, settings):
    """Build an engine context; keyword arguments override the defaults."""
    def _make(**overrides):
        overrides.setdefault("settings", settings)
        overrides.setdefault("session_factory", session_factory)
        overrides.setdefault("clock", clock)
        overrides.setdefault("transport", transport)
        return build_context(**overrides)
    return _make


@pytest.fixture
def context(make_context):
    return make_context()


@pytest.fixture
def registry(db, context):
    return ConfigurationRegistry(db, context.config)


@pytest.fixture
def configure(registry):
    """
    Seed a PAYER_PAYEE rule plus optional threshold and criteria.

    Returns the rule id. parties=False leaves payer and payee unconfigured.
    """
    def _configure(threshold=None, criteria=None, rule=None, parties=True, payer_fields=None):
        result = registry.create_bucketing_rule(rule or {"rule_name": "Payer / Payee", "rule_type": "PAYER_PAYEE"})
        assert result.valid, result.errors
        rule_id = result.value.id
        if threshold:
            assert registry.create_threshold(threshold).valid
        if criteria:
            assert registry.create_commit_criteria(criteria).valid
        if parties:
            payer = {"payer_id": PAYER, "payer_name": "Acme Health", "sender_id": "ACME", "delivery_path": "acme"}
            payer.update(payer_fields or {})
            assert registry.upsert_payer(payer).valid
            assert registry.upsert_payee({"payee_id": PAYEE, "payee_name": "Clinic One"}).valid
        return rule_id
    return _configure


@pytest.fixture
def make_event():
    counter = {"n": 0}

    def _make(paid="100.00", payer=PAYER, payee=PAYEE, claim_id=None, **fields):
        counter["n"] += 1
        return ChangeEvent(
            claim_id=claim_id or f"CLM-{counter['n']:04d}",
            payer_id=payer,
            payee_id=payee,
            total_charge_amount=fields.pop("total_charge_amount", "150.00"),
            paid_amount=paid,
            status=fields.pop("status", "PAID"),
            **fields,
        )
    return _make
