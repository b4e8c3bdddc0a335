"""
Post-operation invariant checks for LockStake.

Run after every mutating call in ``StakingService``:
  - A call that reduces custody leaves it covering every open
    position's principal + available reward
  - Every stake's tier is one of the configured durations
  - No reward base (``amount + correction``) goes negative
  - ``withdrawn_rewards`` never decreases
  - A closed position never reopens, and its handle stays burned
  - Open positions map to a live handle in the position registry
  - Locked principal total matches the sum over open positions

If any invariant fails the service restores its pre-call state and
rejects the call with ``InvariantViolation``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from lockstake_core.staking import StakeLedger


@dataclass
class LedgerSnapshot:
    """Per-stake fields captured before an operation."""
    custody_balance: int = 0
    withdrawn: dict[int, int] = field(default_factory=dict)
    closed: dict[int, bool] = field(default_factory=dict)
    uri_set: dict[int, bool] = field(default_factory=dict)


class InvariantChecker:
    """
    Captures a snapshot of the stake ledger before an operation and
    validates invariants after it.
    """

    def __init__(self):
        self._snapshot: LedgerSnapshot | None = None

    def capture(self, ledger: StakeLedger) -> None:
        snap = LedgerSnapshot(custody_balance=ledger.custody_balance())
        for handle, record in ledger.stakes.items():
            snap.withdrawn[handle] = record.withdrawn_rewards
            snap.closed[handle] = record.closed
            snap.uri_set[handle] = record.uri_set
        self._snapshot = snap

    def verify(self, ledger: StakeLedger, now: int) -> tuple[bool, str]:
        """
        Verify every invariant against the current ledger state.
        Returns (passed, error_message).
        """
        errors: list[str] = []
        for check in (
            self._check_tiers,
            self._check_reward_base,
            self._check_withdrawn,
            self._check_transitions,
            self._check_handles,
            self._check_locked_total,
        ):
            ok, msg = check(ledger, now)
            if not ok:
                errors.append(msg)

        ok, msg = self._check_solvency(ledger, now)
        if not ok:
            errors.append(msg)

        if errors:
            return False, "; ".join(errors)
        return True, ""

    # ── individual checks ───────────────────────────────────────────

    def _check_solvency(self, ledger: StakeLedger, now: int) -> tuple[bool, str]:
        balance = ledger.custody_balance()
        if self._snapshot is not None and balance >= self._snapshot.custody_balance:
            return True, ""
        owed = ledger.obligations(now)
        if balance < owed:
            return False, f"Custody {balance} below open obligations {owed}"
        return True, ""

    @staticmethod
    def _check_tiers(ledger: StakeLedger, now: int) -> tuple[bool, str]:
        for handle, record in ledger.stakes.items():
            if record.lock_seconds not in ledger.tier_rates:
                return False, f"Stake {handle} has unknown tier {record.lock_seconds}"
        return True, ""

    @staticmethod
    def _check_reward_base(ledger: StakeLedger, now: int) -> tuple[bool, str]:
        for handle, record in ledger.stakes.items():
            if record.amount < 0:
                return False, f"Stake {handle} has negative amount"
            if record.reward_base < 0:
                return False, f"Stake {handle} has negative reward base"
        return True, ""

    def _check_withdrawn(self, ledger: StakeLedger, now: int) -> tuple[bool, str]:
        before = self._snapshot.withdrawn if self._snapshot else {}
        for handle, record in ledger.stakes.items():
            if record.withdrawn_rewards < before.get(handle, 0):
                return False, f"Stake {handle} withdrawn rewards decreased"
        return True, ""

    def _check_transitions(self, ledger: StakeLedger, now: int) -> tuple[bool, str]:
        if self._snapshot is None:
            return True, ""
        for handle, was_closed in self._snapshot.closed.items():
            record = ledger.stakes.get(handle)
            if record is None:
                return False, f"Stake {handle} disappeared"
            if was_closed and not record.closed:
                return False, f"Stake {handle} reopened after closure"
            if self._snapshot.uri_set[handle] and not record.uri_set:
                return False, f"Stake {handle} URI flag reset"
        return True, ""

    @staticmethod
    def _check_handles(ledger: StakeLedger, now: int) -> tuple[bool, str]:
        for handle, record in ledger.stakes.items():
            live = ledger.positions.exists(handle)
            if record.closed and live:
                return False, f"Closed stake {handle} still has a live handle"
            if not record.closed and not live:
                return False, f"Open stake {handle} has no live handle"
        return True, ""

    @staticmethod
    def _check_locked_total(ledger: StakeLedger, now: int) -> tuple[bool, str]:
        expected = sum(r.amount for r in ledger.stakes.values() if not r.closed)
        if ledger.total_locked != expected:
            return False, (
                f"Locked total {ledger.total_locked} != open principal {expected}"
            )
        return True, ""
