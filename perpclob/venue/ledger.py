"""
Per-owner quote-currency ledger with an append-only change log.

Each account has two buckets:
- free: spendable balance
- locked: reserved as order or position margin

Operations:
- credit / debit: move value into / out of free
- lock / unlock: move value between free and locked
- debit_locked_first: pay an obligation from locked, spilling into free

Invariants:
1. free >= 0 and locked >= 0 after every operation
2. Every primitive mutation appends exactly one BalanceChange
3. Replaying the change log from zero reproduces (free, locked)

Business failures (bad amount, insufficient funds) come back as a
BalanceResult with an ErrorCode; nothing is raised for them.
"""

import math
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple, TYPE_CHECKING

from .types import (
    EPSILON,
    Balance,
    BalanceChange,
    BalanceResult,
    ChangeKind,
    ErrorCode,
    utcnow,
)
from ..utils.logger import get_logger

if TYPE_CHECKING:
    from ..store.base import VenueStore

logger = get_logger()


@dataclass
class LedgerConfig:
    """Configuration for ledger accounting."""
    check_invariants: bool = False  # Replay the log after every mutation


class Ledger:
    """
    Thread-safe balance ledger.

    Accounts are created lazily on first touch and never deleted. An
    internal re-entrant lock makes every operation atomic with respect
    to the others.
    """

    def __init__(
        self,
        store: Optional["VenueStore"] = None,
        config: Optional[LedgerConfig] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._config = config or LedgerConfig()
        self._store = store
        self._clock = clock or utcnow
        self._lock = threading.RLock()
        self._balances: Dict[str, Balance] = {}

        if store is not None:
            for balance in store.load_balances():
                self._balances[balance.owner] = balance

    # ─────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────

    def get_or_create(self, owner: str) -> Balance:
        """Return the live account for owner, creating an empty one if needed."""
        with self._lock:
            balance = self._balances.get(owner)
            if balance is None:
                now = self._clock()
                balance = Balance(owner=owner, created_at=now, updated_at=now)
                self._balances[owner] = balance
                self._persist(balance)
            return balance

    def get_balance(self, owner: str) -> Balance:
        """Return a detached copy of the account (without the change log)."""
        with self._lock:
            live = self.get_or_create(owner)
            return Balance(
                owner=live.owner,
                free=live.free,
                locked=live.locked,
                total_credits=live.total_credits,
                total_debits=live.total_debits,
                created_at=live.created_at,
                updated_at=live.updated_at,
            )

    def owners(self) -> List[str]:
        with self._lock:
            return list(self._balances)

    def history(self, owner: str, limit: int = 50, offset: int = 0) -> List[BalanceChange]:
        """
        Get balance changes newest first.

        Args:
            owner: Account owner
            limit: Maximum number of changes returned
            offset: Number of newest changes to skip
        """
        with self._lock:
            changes = list(reversed(self.get_or_create(owner).changes))
        return changes[offset:offset + limit]

    def totals(self) -> Dict[str, float]:
        """Aggregate free/locked across all accounts."""
        with self._lock:
            free = sum(b.free for b in self._balances.values())
            locked = sum(b.locked for b in self._balances.values())
            credits = sum(b.total_credits for b in self._balances.values())
            debits = sum(b.total_debits for b in self._balances.values())
        return {
            "free": free,
            "locked": locked,
            "total": free + locked,
            "total_credits": credits,
            "total_debits": debits,
        }

    @staticmethod
    def replay(changes: List[BalanceChange]) -> Tuple[float, float]:
        """Rebuild (free, locked) from a change log."""
        free = 0.0
        locked = 0.0
        for change in changes:
            if change.kind == ChangeKind.CREDIT:
                free += change.amount
            elif change.kind == ChangeKind.DEBIT:
                free -= change.amount
            elif change.kind == ChangeKind.LOCK:
                free -= change.amount
                locked += change.amount
            elif change.kind == ChangeKind.UNLOCK:
                locked -= change.amount
                free += change.amount
        return free, locked

    def check_invariants(self, owner: str) -> List[str]:
        """
        Check account invariants.

        Returns:
            List of error messages (empty if all invariants hold)
        """
        errors = []
        with self._lock:
            balance = self.get_or_create(owner)
            if balance.free < -EPSILON:
                errors.append(f"{owner}: free balance negative ({balance.free})")
            if balance.locked < -EPSILON:
                errors.append(f"{owner}: locked balance negative ({balance.locked})")
            free, locked = self.replay(balance.changes)
            tolerance = 1e-6 * max(1.0, abs(balance.free) + abs(balance.locked))
            if abs(free - balance.free) > tolerance or abs(locked - balance.locked) > tolerance:
                errors.append(
                    f"{owner}: replay mismatch free={free:.8f}/{balance.free:.8f} "
                    f"locked={locked:.8f}/{balance.locked:.8f}"
                )
        return errors

    # ─────────────────────────────────────────────────────────────────────
    # Mutations
    # ─────────────────────────────────────────────────────────────────────

    def credit(self, owner: str, amount: float, reason: str,
               reference_id: Optional[str] = None) -> BalanceResult:
        """Add amount to free."""
        with self._lock:
            invalid = self._check_amount(owner, amount)
            if invalid:
                return invalid
            balance = self.get_or_create(owner)
            balance.free += amount
            balance.total_credits += amount
            self._record(balance, amount, ChangeKind.CREDIT, reason, reference_id)
            return self._ok(balance, amount)

    def debit(self, owner: str, amount: float, reason: str,
              reference_id: Optional[str] = None) -> BalanceResult:
        """Remove amount from free."""
        with self._lock:
            invalid = self._check_amount(owner, amount)
            if invalid:
                return invalid
            balance = self.get_or_create(owner)
            if balance.free < amount - EPSILON:
                return self._insufficient(balance, f"free {balance.free:.8f} < {amount:.8f}")
            balance.free = self._clamp(balance.free - amount)
            balance.total_debits += amount
            self._record(balance, amount, ChangeKind.DEBIT, reason, reference_id)
            return self._ok(balance, amount)

    def lock(self, owner: str, amount: float, reason: str,
             reference_id: Optional[str] = None) -> BalanceResult:
        """Move amount from free to locked."""
        with self._lock:
            invalid = self._check_amount(owner, amount)
            if invalid:
                return invalid
            balance = self.get_or_create(owner)
            if balance.free < amount - EPSILON:
                return self._insufficient(balance, f"free {balance.free:.8f} < {amount:.8f}")
            balance.free = self._clamp(balance.free - amount)
            balance.locked += amount
            self._record(balance, amount, ChangeKind.LOCK, reason, reference_id)
            return self._ok(balance, amount)

    def unlock(self, owner: str, amount: float, reason: str,
               reference_id: Optional[str] = None) -> BalanceResult:
        """Move amount from locked back to free."""
        with self._lock:
            invalid = self._check_amount(owner, amount)
            if invalid:
                return invalid
            balance = self.get_or_create(owner)
            if balance.locked < amount - EPSILON:
                return self._insufficient(
                    balance, f"locked {balance.locked:.8f} < {amount:.8f}"
                )
            balance.locked = self._clamp(balance.locked - amount)
            balance.free += amount
            self._record(balance, amount, ChangeKind.UNLOCK, reason, reference_id)
            return self._ok(balance, amount)

    def debit_locked_first(
        self,
        owner: str,
        amount: float,
        reason: str,
        reference_id: Optional[str] = None,
        max_from_locked: Optional[float] = None,
        allow_partial: bool = False,
    ) -> BalanceResult:
        """
        Debit an obligation drawing from locked first, then free.

        Recorded as an unlock of the locked share followed by a debit of
        the whole amount, so replay stays exact.

        Args:
            owner: Account owner
            amount: Amount owed
            reason: Change reason
            reference_id: Optional reference (position/order id)
            max_from_locked: Cap on the share taken from locked
                (e.g. the margin released by the position being settled)
            allow_partial: Take what is available instead of failing

        Returns:
            BalanceResult whose amount is what was actually collected
        """
        with self._lock:
            invalid = self._check_amount(owner, amount)
            if invalid:
                return invalid
            balance = self.get_or_create(owner)

            locked_cap = balance.locked
            if max_from_locked is not None:
                locked_cap = min(locked_cap, max(0.0, max_from_locked))
            from_locked = min(amount, locked_cap)
            from_free = min(amount - from_locked, balance.free)
            collected = from_locked + from_free

            if collected < amount - EPSILON and not allow_partial:
                return self._insufficient(
                    balance,
                    f"available {collected:.8f} < {amount:.8f}",
                )
            if collected <= EPSILON:
                return self._ok(balance, 0.0)

            if from_locked > EPSILON:
                balance.locked = self._clamp(balance.locked - from_locked)
                balance.free += from_locked
                self._record(balance, from_locked, ChangeKind.UNLOCK, reason, reference_id)

            balance.free = self._clamp(balance.free - collected)
            balance.total_debits += collected
            self._record(balance, collected, ChangeKind.DEBIT, reason, reference_id)

            result = self._ok(balance, collected)
            result.from_locked = from_locked if from_locked > EPSILON else 0.0
            return result

    # ─────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────

    @staticmethod
    def _clamp(value: float) -> float:
        return 0.0 if abs(value) <= EPSILON else value

    def _check_amount(self, owner: str, amount: float) -> Optional[BalanceResult]:
        if amount is None or not math.isfinite(amount) or amount <= 0:
            return BalanceResult(
                success=False,
                owner=owner,
                error_code=ErrorCode.INVALID_AMOUNT,
                error=f"Amount must be positive, got {amount}",
            )
        return None

    @staticmethod
    def _ok(balance: Balance, amount: float) -> BalanceResult:
        return BalanceResult(
            success=True,
            owner=balance.owner,
            amount=amount,
            free=balance.free,
            locked=balance.locked,
        )

    @staticmethod
    def _insufficient(balance: Balance, detail: str) -> BalanceResult:
        return BalanceResult(
            success=False,
            owner=balance.owner,
            free=balance.free,
            locked=balance.locked,
            error_code=ErrorCode.INSUFFICIENT_BALANCE,
            error=f"Insufficient balance: {detail}",
        )

    def _record(self, balance: Balance, amount: float, kind: ChangeKind,
                reason: str, reference_id: Optional[str]) -> None:
        now = self._clock()
        change = BalanceChange(
            amount=amount,
            kind=kind,
            reason=reason,
            timestamp=now,
            reference_id=reference_id,
        )
        balance.changes.append(change)
        balance.updated_at = now
        if self._store is not None:
            self._store.append_balance_change(balance.owner, change)
        self._persist(balance)

        if self._config.check_invariants:
            errors = self.check_invariants(balance.owner)
            if errors:
                logger.error(f"Ledger invariant violation: {'; '.join(errors)}")

    def _persist(self, balance: Balance) -> None:
        if self._store is not None:
            self._store.save_balance(balance)
