"""Shared fixtures: a guard home in tmp_path and a controllable clock."""

import pytest
from eth_account import Account

from x402guard.audit import AuditTrail
from x402guard.clock import DAY_SECONDS, PolicyClock
from x402guard.endpoints import endpoint_id_for_url
from x402guard.engine import GuardEngine
from x402guard.factory import GuardFactory
from x402guard.ledger import InMemoryLedger
from x402guard.policy_store import PolicyStore


START = 20_000 * DAY_SECONDS + 3600
API_URL = "https://api.example.com/v1/search"


class FakeTime:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def clock(fake_time):
    return PolicyClock(now=fake_time)


@pytest.fixture
def store(tmp_path):
    return PolicyStore(tmp_path / "guard")


@pytest.fixture
def audit(tmp_path):
    return AuditTrail(
        path=tmp_path / "audit.jsonl",
        key_path=tmp_path / "secret" / "audit_hmac.key",
    )


@pytest.fixture
def ledger():
    return InMemoryLedger()


@pytest.fixture
def factory(store, audit, clock):
    return GuardFactory(store, audit, clock)


@pytest.fixture
def engine(store, ledger, audit, clock):
    return GuardEngine(store, ledger, audit, clock)


@pytest.fixture
def owner():
    return Account.create().address


@pytest.fixture
def agent():
    return Account.create().address


@pytest.fixture
def merchant():
    return Account.create().address


@pytest.fixture
def endpoint():
    return endpoint_id_for_url(API_URL)


@pytest.fixture
def guard(factory, engine, ledger, owner, agent, endpoint):
    """$1/tx, $5/day, approval above $0.50, funded with $20, one endpoint allowed."""
    account = factory.create_guard(
        owner=owner,
        agent=agent,
        max_per_transaction=1_000_000,
        daily_limit=5_000_000,
        approval_threshold=500_000,
    )
    ledger.mint(owner, 20_000_000)
    engine.fund(account.account_id, owner, 20_000_000)
    engine.set_endpoint_allowed(account.account_id, owner, endpoint, True)
    return account
