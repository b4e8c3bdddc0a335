"""
Time-locked position staking for LockStake.

A deposit locks ``amount`` units of the asset for one of four fixed
durations and mints a position token (the *handle*) to the depositor.
Whoever currently holds the handle owns the position: they may draw
accrued rewards at any time and, once the lock has elapsed, withdraw
principal plus the remaining reward in one payout, which burns the
handle.

Reward Accrual
──────────────
Each tier carries a fixed annual rate in basis points.  The reward base
is the principal plus the administrator's signed correction:

    elapsed       = min(now − start_time, lock_seconds)
    reward_base   = amount + correction                  (never negative)
    accrued_total = reward_base × rate_bps × elapsed
                    ÷ (10 000 × SECONDS_PER_YEAR)        (truncated)
    available     = max(accrued_total − withdrawn_rewards, 0)

Accrual stops at maturity; holding an unclaimed position longer earns
nothing extra.  Integer division truncates toward zero so the ledger can
never pay out more than it owes.

Custody Solvency
────────────────
Deposits and the reward pool sit in a single custody account on the
asset ledger.  A payout is refused with ``InsufficientFunds`` if it would
leave custody below the obligations of the positions still open
(principal + available reward of each).

Lifecycle
─────────
    Active ──withdraw_rewards / correction / set_uri──▶ Active
    Active ──withdraw (mature) / sudo_withdraw_token──▶ Closed

``Closed`` is terminal; closed records stay readable but every mutating
call on them fails with ``StakeClosed``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import asdict, dataclass
from typing import Any, Callable, Optional

from lockstake_core.asset_ledger import AssetLedger, UINT256_MAX, checked_uint
from lockstake_core.errors import (
    AmountOverflow,
    CorrectionUnderflow,
    ExceedsAvailable,
    InsufficientAllowance,
    InsufficientFunds,
    InvalidAmount,
    InvalidDuration,
    NotMatured,
    NotOwner,
    StakeClosed,
    UnknownHandle,
    URIAlreadySet,
)
from lockstake_core.events import EventLog
from lockstake_core.position_registry import PositionRegistry

logger = logging.getLogger("lockstake_staking")


# ── Tier definitions ────────────────────────────────────────────────────

SECONDS_PER_DAY: int = 86_400
SECONDS_PER_YEAR: int = 365 * SECONDS_PER_DAY
BPS_DENOMINATOR: int = 10_000

# lock_seconds → annual rate in basis points
DEFAULT_TIER_RATES: dict[int, int] = {
    90  * SECONDS_PER_DAY: 450,
    180 * SECONDS_PER_DAY: 750,
    270 * SECONDS_PER_DAY: 1_000,
    365 * SECONDS_PER_DAY: 1_250,
}

TIER_COUNT: int = 4

INT256_MIN: int = -(2 ** 255)
INT256_MAX: int = 2 ** 255 - 1

DEFAULT_CUSTODY_ACCOUNT: str = "xstakecustody"

INSUFFICIENT_FUNDS_MSG = "token balance or allowance is lower than amount requested"
NOT_MATURED_MSG = "Stake hasnt matured yet."
URI_ALREADY_SET_MSG = "can't change token uri"


def tier_options_text(tier_rates: dict[int, int]) -> str:
    """``"[90 days, 180 days, 270 days, 365 days]"`` for the given table."""
    days = ", ".join(
        f"{secs // SECONDS_PER_DAY} days" for secs in sorted(tier_rates)
    )
    return f"[{days}]"


def validate_tier_rates(tier_rates: dict[int, int]) -> dict[int, int]:
    """Check that a tier table has exactly four positive durations and rates."""
    if len(tier_rates) != TIER_COUNT:
        raise ValueError(f"Exactly {TIER_COUNT} tiers required, got {len(tier_rates)}")
    for secs, bps in tier_rates.items():
        if not isinstance(secs, int) or secs <= 0:
            raise ValueError(f"Tier duration must be a positive integer: {secs!r}")
        if not isinstance(bps, int) or bps < 0:
            raise ValueError(f"Tier rate must be a non-negative integer: {bps!r}")
    return dict(sorted(tier_rates.items()))


def accrued_reward(reward_base: int, rate_bps: int, elapsed: int) -> int:
    """Reward earned on *reward_base* over *elapsed* seconds, truncated."""
    if reward_base <= 0 or elapsed <= 0:
        return 0
    return (reward_base * rate_bps * elapsed) // (BPS_DENOMINATOR * SECONDS_PER_YEAR)


# ── Stake ───────────────────────────────────────────────────────────────

@dataclass
class Stake:
    """
    One staking position, keyed by its handle.

    ``staker`` records the depositor; the *current* owner is whoever
    holds the handle in the position registry.
    """
    handle: int
    staker: str
    amount: int             # principal locked
    start_time: int         # epoch seconds
    lock_seconds: int       # tier duration
    correction: int = 0     # signed admin adjustment to the reward base
    withdrawn_rewards: int = 0
    uri_set: bool = False
    closed: bool = False

    # ── accrual helpers ────────────────────────────────────────────

    @property
    def maturity_time(self) -> int:
        return self.start_time + self.lock_seconds

    @property
    def reward_base(self) -> int:
        return self.amount + self.correction

    def elapsed(self, now: int) -> int:
        """Seconds of accrual so far, capped at the lock duration."""
        return max(0, min(now - self.start_time, self.lock_seconds))

    def is_mature(self, now: int) -> bool:
        return now - self.start_time >= self.lock_seconds

    def accrued_total(self, rate_bps: int, now: int) -> int:
        return accrued_reward(self.reward_base, rate_bps, self.elapsed(now))

    def available(self, rate_bps: int, now: int) -> int:
        return max(self.accrued_total(rate_bps, now) - self.withdrawn_rewards, 0)

    def to_dict(self, rate_bps: int | None = None, now: int | None = None) -> dict:
        d = asdict(self)
        d["maturity_time"] = self.maturity_time
        if rate_bps is not None and now is not None:
            d["mature"] = self.is_mature(now)
            if not self.closed:
                d["accrued_total"] = self.accrued_total(rate_bps, now)
                d["available_rewards"] = self.available(rate_bps, now)
        d["status"] = "Closed" if self.closed else "Active"
        return d


# ── StakeLedger ─────────────────────────────────────────────────────────

class StakeLedger:
    """
    Maps position handles to ``Stake`` records and enforces the
    withdrawal state machine.

    The ledger does not decide *who* the administrator is; the
    ``sudo_*`` methods only apply the numeric effect and are gated by
    ``StakingService``.  Every method reads the clock at most once.
    """

    def __init__(
        self,
        assets: AssetLedger,
        positions: PositionRegistry,
        custody_account: str = DEFAULT_CUSTODY_ACCOUNT,
        tier_rates: dict[int, int] | None = None,
        clock: Optional[Callable[[], int]] = None,
        events: EventLog | None = None,
    ) -> None:
        self.assets = assets
        self.positions = positions
        self.custody_account = custody_account
        self.tier_rates = validate_tier_rates(
            dict(tier_rates) if tier_rates is not None else dict(DEFAULT_TIER_RATES)
        )
        self.clock = clock or (lambda: int(time.time()))
        self.events = events if events is not None else assets.events
        self.stakes: dict[int, Stake] = {}
        self.total_locked: int = 0
        self.total_rewards_paid: int = 0

    # ── internals ───────────────────────────────────────────────────

    def _now(self, now: Optional[int]) -> int:
        return int(now) if now is not None else int(self.clock())

    def _get_record(self, handle: int) -> Stake:
        record = self.stakes.get(handle)
        if record is None:
            raise UnknownHandle(f"Stake {handle} not found")
        return record

    def _get_open(self, handle: int) -> Stake:
        record = self._get_record(handle)
        if record.closed:
            raise StakeClosed(f"Stake {handle} already closed")
        return record

    def _require_holder(self, record: Stake, caller: str) -> None:
        holder = self.positions.owner_of(record.handle)
        if holder != caller:
            raise NotOwner(f"{caller} does not own position {record.handle}")

    def rate_for(self, lock_seconds: int) -> int:
        rate = self.tier_rates.get(lock_seconds)
        if rate is None:
            raise InvalidDuration(
                "Please make sure the amount specified is one of the four "
                f"{tier_options_text(self.tier_rates)}."
            )
        return rate

    def obligations(self, now: int) -> int:
        """Principal plus available reward over every open position."""
        total = 0
        for record in self.stakes.values():
            if not record.closed:
                total += record.amount + record.available(
                    self.tier_rates[record.lock_seconds], now,
                )
        return total

    def custody_balance(self) -> int:
        return self.assets.balance_of(self.custody_account)

    def _pay(self, to: str, amount: int, released: int, now: int) -> None:
        """
        Transfer *amount* out of custody.

        *released* is how much of the open obligations the payout settles;
        what remains must still be covered by custody afterwards.
        """
        balance = self.custody_balance()
        remaining = self.obligations(now) - released
        if amount > balance or balance - amount < remaining:
            raise InsufficientFunds(
                f"custody cannot cover payout of {amount} "
                f"(balance {balance}, remaining obligations {remaining})"
            )
        if amount > 0:
            self.assets.transfer(self.custody_account, to, amount)

    # ── deposit ─────────────────────────────────────────────────────

    def stake(self, caller: str, amount: int, lock_seconds: int,
              now: Optional[int] = None) -> int:
        """Lock *amount* for *lock_seconds* and return the new handle."""
        checked_uint(amount)
        if amount <= 0:
            raise InvalidAmount("Stake amount must be positive")
        self.rate_for(lock_seconds)
        if self.total_locked + amount > UINT256_MAX:
            raise AmountOverflow("total locked exceeds uint256")

        if self.assets.balance_of(caller) < amount:
            raise InsufficientFunds(INSUFFICIENT_FUNDS_MSG)
        if self.assets.allowance(caller, self.custody_account) < amount:
            raise InsufficientAllowance(INSUFFICIENT_FUNDS_MSG)

        now = self._now(now)
        self.assets.transfer_from(self.custody_account, caller,
                                  self.custody_account, amount)
        handle = self.positions.mint(caller, now=now)
        if handle in self.stakes:
            raise RuntimeError(f"position registry reissued handle {handle}")

        self.stakes[handle] = Stake(
            handle=handle,
            staker=caller,
            amount=amount,
            start_time=now,
            lock_seconds=lock_seconds,
        )
        self.total_locked += amount
        self.events.emit("StakeCreated", timestamp=now, handle=handle,
                         amount=amount, lock_seconds=lock_seconds,
                         staker=caller)
        logger.info(
            f"Stake {handle} created: {amount} locked for "
            f"{lock_seconds // SECONDS_PER_DAY} days by {caller}",
            extra={"op": "stake", "handle": handle},
        )
        return handle

    # ── rewards ─────────────────────────────────────────────────────

    def accrued_total(self, handle: int, now: Optional[int] = None) -> int:
        record = self._get_open(handle)
        return record.accrued_total(self.tier_rates[record.lock_seconds],
                                    self._now(now))

    def available_rewards(self, handle: int, now: Optional[int] = None) -> int:
        """Accrued but not yet withdrawn reward for an open position."""
        record = self._get_open(handle)
        return record.available(self.tier_rates[record.lock_seconds],
                                self._now(now))

    def withdraw_rewards(self, caller: str, handle: int, requested: int,
                         now: Optional[int] = None) -> int:
        """Pay *requested* of the available reward to the handle's holder."""
        record = self._get_open(handle)
        self._require_holder(record, caller)
        checked_uint(requested, "requested")
        if requested <= 0:
            raise InvalidAmount("Requested reward must be positive")

        now = self._now(now)
        available = record.available(self.tier_rates[record.lock_seconds], now)
        if requested > available:
            raise ExceedsAvailable(
                f"Requested {requested} exceeds available rewards {available}"
            )

        self._pay(caller, requested, released=requested, now=now)
        record.withdrawn_rewards += requested
        self.total_rewards_paid += requested
        self.events.emit("RewardsWithdrawn", timestamp=now,
                         handle=handle, amount=requested)
        logger.info(f"Stake {handle}: {requested} rewards withdrawn by {caller}")
        return requested

    # ── full withdrawal ─────────────────────────────────────────────

    def _close(self, record: Stake, recipient: str, settle_rewards: bool,
               now: int) -> tuple[int, int]:
        """Pay out and close *record*.  Returns ``(total_paid, reward_paid)``."""
        available = record.available(self.tier_rates[record.lock_seconds], now)
        reward = available if settle_rewards else 0
        total = record.amount + reward

        self._pay(recipient, total, released=record.amount + available, now=now)
        self.positions.burn(record.handle)
        record.withdrawn_rewards += reward
        record.closed = True
        self.total_locked -= record.amount
        self.total_rewards_paid += reward
        return total, reward

    def withdraw(self, caller: str, handle: int, now: Optional[int] = None) -> int:
        """Withdraw principal + remaining reward of a matured position."""
        record = self._get_open(handle)
        self._require_holder(record, caller)
        now = self._now(now)
        if not record.is_mature(now):
            raise NotMatured(NOT_MATURED_MSG)

        total, _reward = self._close(record, caller, settle_rewards=True, now=now)
        self.events.emit("StakeWithdrawn", timestamp=now,
                         handle=handle, total_paid=total)
        logger.info(f"Stake {handle} withdrawn by {caller}: paid {total}",
                    extra={"op": "withdraw", "handle": handle})
        return total

    # ── metadata ────────────────────────────────────────────────────

    def set_uri(self, handle: int, uri: str) -> None:
        record = self._get_open(handle)
        if record.uri_set:
            raise URIAlreadySet(URI_ALREADY_SET_MSG)
        self.positions.set_metadata(handle, uri)
        record.uri_set = True
        self.events.emit("URISet", timestamp=self._now(None),
                         handle=handle, uri=uri)

    # ── administrative overrides ────────────────────────────────────

    def sudo_withdraw_token(
        self,
        handle: int,
        recipient: str | None = None,
        settle_rewards: bool = True,
        now: Optional[int] = None,
    ) -> int:
        """
        Close a position regardless of maturity.

        Pays principal (plus available reward when *settle_rewards*) to
        *recipient*, defaulting to the current handle holder, zeroes the
        reward base (principal and correction) and burns the handle.
        """
        record = self._get_open(handle)
        now = self._now(now)
        to = recipient or self.positions.owner_of(handle)

        total, reward = self._close(record, to, settle_rewards, now)
        principal = record.amount
        record.amount = 0
        record.correction = 0
        self.events.emit("StakeForceClosed", timestamp=now, handle=handle,
                         total_paid=total, recipient=to)
        logger.warning(
            f"Stake {handle} force-closed: principal {principal}, "
            f"reward {reward} paid to {to}",
            extra={"op": "sudo_withdraw_token", "handle": handle},
        )
        return total

    def sudo_add_token(self, handle: int, delta: int) -> int:
        """Raise the reward base of *handle* by *delta*."""
        record = self._get_open(handle)
        checked_uint(delta, "delta")
        if delta <= 0:
            raise InvalidAmount("Correction delta must be positive")
        if record.correction + delta > INT256_MAX:
            raise AmountOverflow("correction exceeds int256")
        record.correction += delta
        self.events.emit("CorrectionAdjusted", timestamp=self._now(None),
                         handle=handle, delta=delta,
                         correction=record.correction)
        logger.info(f"Stake {handle}: correction +{delta} → {record.correction}")
        return record.correction

    def sudo_deduct_token(self, handle: int, delta: int) -> int:
        """Lower the reward base of *handle* by *delta*."""
        record = self._get_open(handle)
        checked_uint(delta, "delta")
        if delta <= 0:
            raise InvalidAmount("Correction delta must be positive")
        if record.correction - delta < INT256_MIN:
            raise AmountOverflow("correction below int256")
        if record.amount + record.correction - delta < 0:
            raise CorrectionUnderflow(
                f"Deducting {delta} would make the reward base of "
                f"stake {handle} negative"
            )
        record.correction -= delta
        self.events.emit("CorrectionAdjusted", timestamp=self._now(None),
                         handle=handle, delta=-delta,
                         correction=record.correction)
        logger.info(f"Stake {handle}: correction -{delta} → {record.correction}")
        return record.correction

    # ── queries ─────────────────────────────────────────────────────

    def get_stake(self, handle: int) -> Stake:
        """The record for *handle*, open or closed."""
        return self._get_record(handle)

    def is_mature(self, handle: int, now: Optional[int] = None) -> bool:
        return self._get_open(handle).is_mature(self._now(now))

    def maturity_time(self, handle: int) -> int:
        return self._get_record(handle).maturity_time

    def stakes_of(self, owner: str) -> list[Stake]:
        """Open positions whose handle is currently held by *owner*."""
        return [
            self.stakes[h] for h in self.positions.tokens_of(owner)
            if h in self.stakes and not self.stakes[h].closed
        ]

    def stake_info(self, handle: int, now: Optional[int] = None) -> dict:
        record = self._get_record(handle)
        return record.to_dict(self.tier_rates[record.lock_seconds],
                              self._now(now))

    def tier_info(self) -> list[dict]:
        return [
            {
                "lock_seconds": secs,
                "lock_days": secs // SECONDS_PER_DAY,
                "rate_bps": bps,
                "rate_pct": f"{bps / 100:.2f}%",
            }
            for secs, bps in self.tier_rates.items()
        ]

    def pool_summary(self, now: Optional[int] = None) -> dict:
        now = self._now(now)
        open_stakes = [s for s in self.stakes.values() if not s.closed]
        pending = sum(
            s.available(self.tier_rates[s.lock_seconds], now) for s in open_stakes
        )
        return {
            "custody_account": self.custody_account,
            "custody_balance": self.custody_balance(),
            "total_locked": self.total_locked,
            "total_pending_rewards": pending,
            "total_rewards_paid": self.total_rewards_paid,
            "open_stakes": len(open_stakes),
            "total_stakes": len(self.stakes),
        }

    # ── state export (storage / rollback) ───────────────────────────

    def export_state(self) -> dict[str, Any]:
        return {
            "stakes": [asdict(s) for s in self.stakes.values()],
            "total_locked": self.total_locked,
            "total_rewards_paid": self.total_rewards_paid,
        }

    def load_state(self, state: dict[str, Any]) -> None:
        """
        Replace the ledger contents with *state*.

        Raises ValueError, leaving the ledger untouched, if any stored
        position uses a lock duration missing from the tier table (for
        example after ``[staking.tiers]`` was edited between restarts).
        """
        stakes = {row["handle"]: Stake(**row) for row in state["stakes"]}
        unknown = sorted({
            r.lock_seconds for r in stakes.values()
            if r.lock_seconds not in self.tier_rates
        })
        if unknown:
            raise ValueError(
                f"Stored positions use lock durations {unknown} missing from "
                f"the tier table {tier_options_text(self.tier_rates)}"
            )
        self.stakes = stakes
        self.total_locked = state["total_locked"]
        self.total_rewards_paid = state["total_rewards_paid"]
