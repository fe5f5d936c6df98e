"""Tests for the guard engine: payment flow, approvals and treasury."""

from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager

import pytest
from eth_account import Account

from x402guard.audit import EventType
from x402guard.authorizer import BlockReason, DecisionKind
from x402guard.clock import DAY_SECONDS
from x402guard.endpoints import endpoint_id_for_url
from x402guard.engine import GuardEngine
from x402guard.errors import (
    AccountNotFoundError,
    InsufficientBalanceError,
    NotAgentError,
    NotOwnerError,
    PaymentAlreadyResolvedError,
    TransferFailedError,
)
from x402guard.ledger import InMemoryLedger, TransferResult


USD = 1_000_000


@pytest.fixture
def scenario_guard(factory, engine, ledger, owner, agent, endpoint):
    """$5/tx, $50/day, approval above $2, balance $100."""
    account = factory.create_guard(
        owner=owner,
        agent=agent,
        max_per_transaction=5 * USD,
        daily_limit=50 * USD,
        approval_threshold=2 * USD,
    )
    ledger.mint(owner, 100 * USD)
    engine.fund(account.account_id, owner, 100 * USD)
    engine.set_endpoint_allowed(account.account_id, owner, endpoint, True)
    return account


class TestScenarios:
    def test_allowed_payment_moves_funds(self, engine, scenario_guard, agent, merchant, endpoint):
        gid = scenario_guard.account_id
        result = engine.execute_payment(gid, agent, merchant, 1 * USD, endpoint)

        assert result.executed
        assert result.decision.kind == DecisionKind.ALLOWED
        assert result.daily_spent_after == 1 * USD
        assert engine.get_account(gid).daily_spent == 1 * USD
        assert engine.get_balance(gid) == 99 * USD

    def test_over_per_tx_limit_changes_nothing(self, engine, scenario_guard, agent, merchant, endpoint):
        gid = scenario_guard.account_id
        before = engine.get_account(gid)

        result = engine.execute_payment(gid, agent, merchant, 10 * USD, endpoint)

        assert result.blocked
        assert result.decision.reason == BlockReason.EXCEEDS_PER_TRANSACTION_LIMIT
        assert engine.get_account(gid) == before
        assert engine.get_balance(gid) == 100 * USD

    def test_daily_limit_blocks_thirteenth_payment(
        self, engine, scenario_guard, owner, agent, merchant, endpoint
    ):
        gid = scenario_guard.account_id
        # $4 is above the $2 threshold; raise it so the payments execute directly.
        engine.set_policy(gid, owner, 5 * USD, 50 * USD, 5 * USD)

        for _ in range(12):
            assert engine.execute_payment(gid, agent, merchant, 4 * USD, endpoint).executed

        result = engine.execute_payment(gid, agent, merchant, 4 * USD, endpoint)
        assert result.blocked
        assert result.decision.reason == BlockReason.EXCEEDS_DAILY_LIMIT
        assert engine.get_account(gid).daily_spent == 48 * USD
        assert engine.get_balance(gid) == 52 * USD

    def test_above_threshold_is_queued(self, engine, scenario_guard, agent, merchant, endpoint):
        gid = scenario_guard.account_id
        result = engine.execute_payment(gid, agent, merchant, 3 * USD, endpoint)

        assert result.queued
        assert result.payment_id == 0
        pending = engine.get_pending_payment(gid, 0)
        assert pending.to == merchant.lower()
        assert pending.amount == 3 * USD
        assert not pending.executed
        assert not pending.rejected
        assert engine.get_balance(gid) == 100 * USD
        assert engine.get_account(gid).daily_spent == 0

    def test_approve_executes_queued_payment(
        self, engine, ledger, scenario_guard, owner, agent, merchant, endpoint
    ):
        gid = scenario_guard.account_id
        engine.execute_payment(gid, agent, merchant, 3 * USD, endpoint)

        result = engine.approve_payment(gid, owner, 0)

        assert result.executed
        assert result.daily_spent_after == 3 * USD
        assert engine.get_pending_payment(gid, 0).executed
        assert engine.get_balance(gid) == 97 * USD
        assert ledger.balance_of(merchant) == 3 * USD
        assert engine.get_account(gid).daily_spent == 3 * USD

    def test_reject_leaves_funds_and_counters(
        self, engine, scenario_guard, owner, agent, merchant, endpoint
    ):
        gid = scenario_guard.account_id
        engine.execute_payment(gid, agent, merchant, 3 * USD, endpoint)

        pending = engine.reject_payment(gid, owner, 0)

        assert pending.rejected
        assert engine.get_pending_payment(gid, 0).rejected
        assert engine.get_balance(gid) == 100 * USD
        assert engine.get_account(gid).daily_spent == 0
        assert engine.get_account(gid).total_spent == 0


class TestPolicyAdministration:
    def test_set_policy_round_trip(self, engine, audit, guard, owner):
        gid = guard.account_id
        engine.set_policy(gid, owner, 7, 8, 9)

        account = engine.get_account(gid)
        assert (account.max_per_transaction, account.daily_limit, account.approval_threshold) == (7, 8, 9)
        event = audit.read_events(event_type=EventType.POLICY_UPDATED)[-1]
        assert event.details == {"max_per_transaction": 7, "daily_limit": 8, "approval_threshold": 9}

    def test_non_owner_cannot_set_policy(self, engine, guard, agent):
        gid = guard.account_id
        before = engine.get_account(gid)
        with pytest.raises(NotOwnerError):
            engine.set_policy(gid, agent, 7, 8, 9)
        assert engine.get_account(gid) == before

    def test_negative_limit_rejected(self, engine, guard, owner):
        gid = guard.account_id
        before = engine.get_account(gid)
        with pytest.raises(ValueError):
            engine.set_policy(gid, owner, -1, 8, 9)
        assert engine.get_account(gid) == before

    def test_set_agent_rotates_payment_rights(
        self, engine, audit, guard, owner, agent, merchant, endpoint
    ):
        gid = guard.account_id
        new_agent = Account.create().address
        engine.set_agent(gid, owner, new_agent)

        assert engine.get_account(gid).agent == new_agent.lower()
        with pytest.raises(NotAgentError):
            engine.execute_payment(gid, agent, merchant, 100_000, endpoint)
        assert engine.execute_payment(gid, new_agent, merchant, 100_000, endpoint).executed

        event = audit.read_events(event_type=EventType.AGENT_UPDATED)[-1]
        assert event.details == {"old_agent": agent.lower(), "new_agent": new_agent.lower()}

    def test_non_owner_cannot_set_agent(self, engine, guard, agent):
        gid = guard.account_id
        with pytest.raises(NotOwnerError):
            engine.set_agent(gid, agent, Account.create().address)
        assert engine.get_account(gid).agent == agent.lower()


class TestExecutePayment:
    def test_non_agent_rejected_without_state_change(self, engine, guard, owner, merchant, endpoint):
        gid = guard.account_id
        before = engine.get_account(gid)
        with pytest.raises(NotAgentError):
            engine.execute_payment(gid, owner, merchant, 100_000, endpoint)
        assert engine.get_account(gid) == before

    def test_unknown_account(self, engine, agent, merchant, endpoint):
        with pytest.raises(AccountNotFoundError):
            engine.execute_payment("0x" + "ab" * 20, agent, merchant, 100_000, endpoint)

    def test_endpoint_not_allowed(self, engine, guard, agent, merchant):
        other = endpoint_id_for_url("https://unlisted.example.com")
        result = engine.execute_payment(guard.account_id, agent, merchant, 100_000, other)
        assert result.decision.reason == BlockReason.ENDPOINT_NOT_ALLOWED

    def test_allow_all_bypasses_allowlist(self, engine, guard, owner, agent, merchant):
        other = endpoint_id_for_url("https://unlisted.example.com")
        engine.set_allow_all_endpoints(guard.account_id, owner, True)
        assert engine.execute_payment(guard.account_id, agent, merchant, 100_000, other).executed

    def test_per_tx_cap_checked_before_endpoint(self, engine, guard, agent, merchant):
        other = endpoint_id_for_url("https://unlisted.example.com")
        result = engine.execute_payment(guard.account_id, agent, merchant, 2_000_000, other)
        assert result.decision.reason == BlockReason.EXCEEDS_PER_TRANSACTION_LIMIT

    def test_non_positive_amount(self, engine, guard, agent, merchant, endpoint):
        with pytest.raises(ValueError):
            engine.execute_payment(guard.account_id, agent, merchant, 0, endpoint)

    def test_amount_equal_to_caps_is_allowed(self, engine, guard, owner, agent, merchant, endpoint):
        gid = guard.account_id
        engine.set_policy(gid, owner, 1_000_000, 1_000_000, 1_000_000)
        result = engine.execute_payment(gid, agent, merchant, 1_000_000, endpoint)
        assert result.executed
        assert engine.get_remaining_daily_budget(gid) == 0

    def test_counters_track_totals(self, engine, guard, agent, merchant, endpoint):
        gid = guard.account_id
        engine.execute_payment(gid, agent, merchant, 200_000, endpoint)
        engine.execute_payment(gid, agent, merchant, 300_000, endpoint)
        account = engine.get_account(gid)
        assert account.daily_spent == 500_000
        assert account.total_spent == 500_000
        assert engine.get_remaining_daily_budget(gid) == 4_500_000


class TestDailyReset:
    def test_new_day_resets_daily_counter(
        self, engine, guard, fake_time, agent, merchant, endpoint
    ):
        gid = guard.account_id
        engine.execute_payment(gid, agent, merchant, 500_000, endpoint)
        fake_time.advance(DAY_SECONDS)

        assert engine.get_account(gid).daily_spent == 0
        result = engine.execute_payment(gid, agent, merchant, 400_000, endpoint)
        assert result.daily_spent_after == 400_000
        assert engine.get_account(gid).total_spent == 900_000

    def test_blocked_request_does_not_persist_reset(
        self, engine, store, guard, fake_time, agent, merchant, endpoint
    ):
        gid = guard.account_id
        engine.execute_payment(gid, agent, merchant, 500_000, endpoint)
        stored_day = store.get_account(gid).last_reset_day
        fake_time.advance(DAY_SECONDS)

        result = engine.execute_payment(gid, agent, merchant, 5_000_000, endpoint)

        assert result.blocked
        raw = store.get_account(gid)
        assert raw.last_reset_day == stored_day
        assert raw.daily_spent == 500_000
        assert engine.get_account(gid).daily_spent == 0

    def test_time_until_reset(self, engine, guard, fake_time):
        assert engine.get_time_until_reset(guard.account_id) == DAY_SECONDS - 3600
        fake_time.advance(DAY_SECONDS - 3600 - 1)
        assert engine.get_time_until_reset(guard.account_id) == 1


class TestApprovals:
    def test_approval_overrides_caps(self, engine, guard, owner, agent, merchant, endpoint):
        gid = guard.account_id
        queued = engine.execute_payment(gid, agent, merchant, 900_000, endpoint)
        engine.set_policy(gid, owner, 100_000, 100_000, 50_000)

        result = engine.approve_payment(gid, owner, queued.payment_id)

        assert result.executed
        assert engine.get_account(gid).daily_spent == 900_000

    def test_resolved_entries_are_terminal(self, engine, guard, owner, agent, merchant, endpoint):
        gid = guard.account_id
        engine.execute_payment(gid, agent, merchant, 900_000, endpoint)
        engine.reject_payment(gid, owner, 0)

        with pytest.raises(PaymentAlreadyResolvedError):
            engine.approve_payment(gid, owner, 0)
        with pytest.raises(PaymentAlreadyResolvedError):
            engine.reject_payment(gid, owner, 0)
        assert engine.get_balance(gid) == 20_000_000

    def test_only_owner_resolves(self, engine, guard, agent, merchant, endpoint):
        gid = guard.account_id
        engine.execute_payment(gid, agent, merchant, 900_000, endpoint)
        with pytest.raises(NotOwnerError):
            engine.approve_payment(gid, agent, 0)
        with pytest.raises(NotOwnerError):
            engine.reject_payment(gid, agent, 0)
        assert not engine.get_pending_payment(gid, 0).resolved

    def test_list_pending_hides_resolved(self, engine, guard, owner, agent, merchant, endpoint):
        gid = guard.account_id
        engine.execute_payment(gid, agent, merchant, 600_000, endpoint)
        engine.execute_payment(gid, agent, merchant, 700_000, endpoint)
        engine.approve_payment(gid, owner, 0)

        assert [p.payment_id for p in engine.list_pending_payments(gid)] == [1]
        assert len(engine.list_pending_payments(gid, include_resolved=True)) == 2


class TestCheckPayment:
    def test_check_matches_execute(self, engine, guard, agent, merchant, endpoint):
        gid = guard.account_id
        cases = [100_000, 900_000, 2_000_000]
        checks = [engine.check_payment(gid, amount, endpoint) for amount in cases]

        assert checks[0].allowed and not checks[0].needs_approval
        assert checks[1].allowed and checks[1].needs_approval
        assert not checks[2].allowed
        assert checks[2].reason == "ExceedsPerTransactionLimit"

        for amount, check in zip(cases, checks):
            result = engine.execute_payment(gid, agent, merchant, amount, endpoint)
            assert check.allowed == (not result.blocked)
            assert check.needs_approval == result.queued

    def test_check_does_not_mutate(self, engine, guard, endpoint):
        gid = guard.account_id
        before = engine.get_account(gid)
        engine.check_payment(gid, 100_000, endpoint)
        assert engine.get_account(gid) == before
        assert engine.get_balance(gid) == 20_000_000


class TestTreasury:
    def test_fund_from_any_caller(self, engine, ledger, guard):
        stranger = Account.create().address
        ledger.mint(stranger, 1_000_000)
        assert engine.fund(guard.account_id, stranger, 1_000_000) == 21_000_000

    def test_fund_insufficient_source(self, engine, guard):
        stranger = Account.create().address
        with pytest.raises(InsufficientBalanceError):
            engine.fund(guard.account_id, stranger, 1_000_000)

    def test_withdraw_to_owner(self, engine, ledger, guard, owner):
        gid = guard.account_id
        assert engine.withdraw(gid, owner, 5_000_000) == 15_000_000
        assert ledger.balance_of(owner) == 5_000_000

    def test_withdraw_more_than_balance(self, engine, guard, owner):
        with pytest.raises(InsufficientBalanceError):
            engine.withdraw(guard.account_id, owner, 30_000_000)

    def test_withdraw_reports_balance_held_under_lock(
        self, engine, store, ledger, guard, owner, monkeypatch
    ):
        gid = guard.account_id
        account_lock = store.account_lock

        @contextmanager
        def lock_then_deposit(account_id):
            with account_lock(account_id):
                yield
            ledger.mint(account_id, 1_000_000)

        monkeypatch.setattr(store, "account_lock", lock_then_deposit)

        assert engine.withdraw(gid, owner, 5_000_000) == 15_000_000
        assert ledger.balance_of(gid) == 16_000_000

    def test_withdraw_all(self, engine, ledger, guard, owner):
        gid = guard.account_id
        assert engine.withdraw_all(gid, owner) == 20_000_000
        assert engine.get_balance(gid) == 0
        assert engine.withdraw_all(gid, owner) == 0

    def test_agent_cannot_withdraw(self, engine, guard, agent):
        with pytest.raises(NotOwnerError):
            engine.withdraw_all(guard.account_id, agent)

    def test_payment_with_empty_balance(self, engine, guard, owner, agent, merchant, endpoint):
        gid = guard.account_id
        engine.withdraw_all(gid, owner)
        before = engine.get_account(gid)

        with pytest.raises(InsufficientBalanceError):
            engine.execute_payment(gid, agent, merchant, 100_000, endpoint)
        assert engine.get_account(gid) == before


class ExplodingLedger(InMemoryLedger):
    def transfer_out(self, account_id, to, amount):
        raise ConnectionError("rpc unavailable")


class RefusingLedger(InMemoryLedger):
    def transfer_out(self, account_id, to, amount):
        return TransferResult(success=False, reason="paused")


class TestLedgerFailures:
    @pytest.mark.parametrize("ledger_cls", [ExplodingLedger, RefusingLedger])
    def test_failed_transfer_rolls_back_counters(
        self, store, audit, clock, factory, ledger_cls, owner, agent, merchant, endpoint
    ):
        failing = ledger_cls()
        engine = GuardEngine(store, failing, audit, clock)
        account = factory.create_guard(owner, agent, 1_000_000, 5_000_000, 500_000)
        failing.mint(account.account_id, 10_000_000)
        engine.set_endpoint_allowed(account.account_id, owner, endpoint, True)

        with pytest.raises(TransferFailedError):
            engine.execute_payment(account.account_id, agent, merchant, 100_000, endpoint)

        after = engine.get_account(account.account_id)
        assert after.daily_spent == 0
        assert after.total_spent == 0
        failed = audit.read_events(account_id=account.account_id, event_type=EventType.PAYMENT_FAILED)
        assert len(failed) == 1

    def test_failed_approval_stays_pending(
        self, store, audit, clock, factory, owner, agent, merchant, endpoint
    ):
        failing = RefusingLedger()
        engine = GuardEngine(store, failing, audit, clock)
        account = factory.create_guard(owner, agent, 1_000_000, 5_000_000, 500_000)
        engine.set_endpoint_allowed(account.account_id, owner, endpoint, True)
        engine.execute_payment(account.account_id, agent, merchant, 900_000, endpoint)

        with pytest.raises(TransferFailedError):
            engine.approve_payment(account.account_id, owner, 0)

        assert not engine.get_pending_payment(account.account_id, 0).resolved
        assert engine.get_account(account.account_id).total_spent == 0


class TestAuditEvents:
    def test_payment_lifecycle_is_audited(self, engine, audit, guard, owner, agent, merchant, endpoint):
        gid = guard.account_id
        engine.execute_payment(gid, agent, merchant, 100_000, endpoint)
        engine.execute_payment(gid, agent, merchant, 2_000_000, endpoint)
        engine.execute_payment(gid, agent, merchant, 900_000, endpoint)
        engine.approve_payment(gid, owner, 0)

        types = [e.event_type for e in audit.read_events(account_id=gid)]
        assert types[-5:] == [
            "payment_executed",
            "payment_blocked",
            "payment_queued",
            "payment_approved",
            "payment_executed",
        ]

    def test_blocked_event_carries_reason(self, engine, audit, guard, agent, merchant, endpoint):
        engine.execute_payment(guard.account_id, agent, merchant, 2_000_000, endpoint)
        blocked = audit.read_events(event_type=EventType.PAYMENT_BLOCKED)
        assert blocked[-1].reason == "ExceedsPerTransactionLimit"
        assert not blocked[-1].success

    def test_unreadable_audit_log_keeps_committed_payment(
        self, engine, audit, ledger, guard, agent, merchant, endpoint, caplog
    ):
        gid = guard.account_id
        with open(audit.path, "a") as f:
            f.write("not json\n")

        result = engine.execute_payment(gid, agent, merchant, 100_000, endpoint)

        assert result.executed
        assert result.daily_spent_after == 100_000
        assert ledger.balance_of(gid) == 19_900_000
        assert engine.get_account(gid).daily_spent == 100_000
        assert "Failed to write payment_executed audit event" in caplog.text


class RecordingNotifier:
    def __init__(self):
        self.queued = []

    def payment_queued(self, pending):
        self.queued.append(pending)


def test_notifier_called_after_queueing(store, ledger, audit, clock, guard, agent, merchant, endpoint):
    notifier = RecordingNotifier()
    engine = GuardEngine(store, ledger, audit, clock, notifier=notifier)

    engine.execute_payment(guard.account_id, agent, merchant, 100_000, endpoint)
    engine.execute_payment(guard.account_id, agent, merchant, 900_000, endpoint)

    assert [p.payment_id for p in notifier.queued] == [0]
    assert notifier.queued[0].amount == 900_000


class TestConcurrency:
    def test_concurrent_payments_never_exceed_daily_limit(
        self, engine, guard, owner, agent, merchant, endpoint
    ):
        gid = guard.account_id
        engine.set_policy(gid, owner, 1_000_000, 3_000_000, 1_000_000)

        def attempt(i: int) -> bool:
            return engine.execute_payment(gid, agent, merchant, 600_000, endpoint).executed

        with ThreadPoolExecutor(max_workers=10) as ex:
            results = list(ex.map(attempt, range(20)))

        assert sum(results) == 5
        account = engine.get_account(gid)
        assert account.daily_spent == 3_000_000
        assert engine.get_balance(gid) == 17_000_000

    def test_concurrent_approvals_execute_once(self, engine, guard, owner, agent, merchant, endpoint):
        gid = guard.account_id
        engine.execute_payment(gid, agent, merchant, 900_000, endpoint)

        def attempt(i: int) -> bool:
            try:
                engine.approve_payment(gid, owner, 0)
                return True
            except PaymentAlreadyResolvedError:
                return False

        with ThreadPoolExecutor(max_workers=8) as ex:
            results = list(ex.map(attempt, range(8)))

        assert sum(results) == 1
        assert engine.get_balance(gid) == 19_100_000
