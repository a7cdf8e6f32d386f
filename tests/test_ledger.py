"""
Tests for the balance ledger.

Validates that:
1. lock/unlock move value between free and locked
2. Rejections leave the account untouched
3. The change log replays to the live balance
4. Locked-first debits spill into free and honor caps
"""

import pytest

from perpclob.store.memory_store import MemoryStore
from perpclob.venue.ledger import Ledger, LedgerConfig
from perpclob.venue.types import ChangeKind, ErrorCode


@pytest.fixture
def ledger(clock):
    return Ledger(store=MemoryStore(), config=LedgerConfig(check_invariants=True), clock=clock)


class TestLockUnlock:
    """Moving value between free and locked."""

    def test_lock_unlock_round_trip(self, ledger):
        """free 10, lock 6 -> 4/6, unlock 6 -> 10/0."""
        ledger.credit("alice", 10, "Deposit")

        result = ledger.lock("alice", 6, "Order margin")
        assert result.success
        assert result.free == pytest.approx(4)
        assert result.locked == pytest.approx(6)

        result = ledger.unlock("alice", 6, "Order cancelled")
        assert result.success
        balance = ledger.get_balance("alice")
        assert balance.free == pytest.approx(10)
        assert balance.locked == pytest.approx(0)

    def test_lock_more_than_free_is_rejected(self, ledger):
        """Locking 11 out of 10 fails and changes nothing."""
        ledger.credit("alice", 10, "Deposit")
        changes_before = len(ledger.history("alice"))

        result = ledger.lock("alice", 11, "Order margin")

        assert not result.success
        assert result.error_code == ErrorCode.INSUFFICIENT_BALANCE
        balance = ledger.get_balance("alice")
        assert balance.free == pytest.approx(10)
        assert balance.locked == 0
        assert len(ledger.history("alice")) == changes_before

    def test_unlock_more_than_locked_is_rejected(self, ledger):
        ledger.credit("alice", 10, "Deposit")
        ledger.lock("alice", 3, "Order margin")

        result = ledger.unlock("alice", 5, "Release")

        assert not result.success
        assert result.error_code == ErrorCode.INSUFFICIENT_BALANCE
        assert ledger.get_balance("alice").locked == pytest.approx(3)

    @pytest.mark.parametrize("amount", [0, -1, float("nan"), float("inf"), None])
    def test_invalid_amounts_are_rejected(self, ledger, amount):
        result = ledger.credit("alice", amount, "Deposit")
        assert not result.success
        assert result.error_code == ErrorCode.INVALID_AMOUNT
        assert ledger.history("alice") == []


class TestCreditDebit:
    """Moving value in and out of free."""

    def test_debit_beyond_free_is_rejected(self, ledger):
        ledger.credit("bob", 5, "Deposit")
        ledger.lock("bob", 4, "Order margin")

        result = ledger.debit("bob", 2, "Withdrawal")

        assert not result.success
        assert result.error_code == ErrorCode.INSUFFICIENT_BALANCE
        assert ledger.get_balance("bob").free == pytest.approx(1)

    def test_totals_track_credits_and_debits(self, ledger):
        ledger.credit("bob", 100, "Deposit")
        ledger.debit("bob", 30, "Withdrawal")
        balance = ledger.get_balance("bob")
        assert balance.total_credits == pytest.approx(100)
        assert balance.total_debits == pytest.approx(30)
        assert balance.total == pytest.approx(70)

    def test_accounts_are_created_lazily(self, ledger):
        balance = ledger.get_balance("nobody")
        assert balance.free == 0
        assert balance.locked == 0
        assert "nobody" in ledger.owners()


class TestChangeLog:
    """Append-only history and replay."""

    def test_replay_reproduces_balance(self, ledger):
        ledger.credit("alice", 50, "Deposit")
        ledger.lock("alice", 20, "Order margin")
        ledger.unlock("alice", 5, "Price improvement")
        ledger.debit("alice", 10, "Withdrawal")
        ledger.debit_locked_first("alice", 18, "Realized loss")

        balance = ledger.get_balance("alice")
        free, locked = Ledger.replay(list(reversed(ledger.history("alice", limit=100))))

        assert free == pytest.approx(balance.free)
        assert locked == pytest.approx(balance.locked)
        assert ledger.check_invariants("alice") == []

    def test_history_is_newest_first_with_paging(self, ledger):
        for amount in (1, 2, 3, 4):
            ledger.credit("alice", amount, f"Deposit {amount}")

        page = ledger.history("alice", limit=2, offset=1)

        assert [c.amount for c in page] == [3, 2]
        assert all(c.kind == ChangeKind.CREDIT for c in page)

    def test_reference_id_is_recorded(self, ledger):
        ledger.credit("alice", 10, "Deposit", reference_id="dep-1")
        assert ledger.history("alice")[0].reference_id == "dep-1"

    def test_balances_reload_from_store(self, clock):
        store = MemoryStore()
        first = Ledger(store=store, clock=clock)
        first.credit("alice", 25, "Deposit")
        first.lock("alice", 10, "Order margin")

        second = Ledger(store=store, clock=clock)

        balance = second.get_balance("alice")
        assert balance.free == pytest.approx(15)
        assert balance.locked == pytest.approx(10)
        assert second.check_invariants("alice") == []


class TestDebitLockedFirst:
    """Obligations paid from locked, spilling into free."""

    def test_spills_into_free(self, ledger):
        ledger.credit("alice", 20, "Deposit")
        ledger.lock("alice", 5, "Position margin")

        result = ledger.debit_locked_first("alice", 8, "Realized loss")

        assert result.success
        assert result.amount == pytest.approx(8)
        assert result.from_locked == pytest.approx(5)
        balance = ledger.get_balance("alice")
        assert balance.locked == pytest.approx(0)
        assert balance.free == pytest.approx(12)

    def test_locked_share_is_capped(self, ledger):
        ledger.credit("alice", 20, "Deposit")
        ledger.lock("alice", 10, "Position margin")

        result = ledger.debit_locked_first("alice", 6, "Realized loss", max_from_locked=4)

        assert result.from_locked == pytest.approx(4)
        balance = ledger.get_balance("alice")
        assert balance.locked == pytest.approx(6)
        assert balance.free == pytest.approx(8)

    def test_shortfall_rejected_unless_partial(self, ledger):
        ledger.credit("alice", 3, "Deposit")

        rejected = ledger.debit_locked_first("alice", 5, "Funding payment")
        assert not rejected.success
        assert rejected.error_code == ErrorCode.INSUFFICIENT_BALANCE
        assert ledger.get_balance("alice").free == pytest.approx(3)

        partial = ledger.debit_locked_first("alice", 5, "Funding payment", allow_partial=True)
        assert partial.success
        assert partial.amount == pytest.approx(3)
        assert ledger.get_balance("alice").total == pytest.approx(0)

    def test_recorded_as_unlock_then_debit(self, ledger):
        ledger.credit("alice", 10, "Deposit")
        ledger.lock("alice", 4, "Position margin")

        ledger.debit_locked_first("alice", 6, "Realized loss", reference_id="pos-1")

        newest = ledger.history("alice", limit=2)
        assert [c.kind for c in newest] == [ChangeKind.DEBIT, ChangeKind.UNLOCK]
        assert newest[0].amount == pytest.approx(6)
        assert newest[1].amount == pytest.approx(4)
