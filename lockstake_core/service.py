"""
Staking service: the externally callable surface of LockStake.

Wires the asset ledger, position registry, access control and stake
ledger together over one shared event log, and gives every call the
execution guarantees of a contract transaction:

  - Calls are serialised (one at a time, in submission order)
  - The clock is read once per call
  - A call either fully commits or leaves no trace: on any exception,
    including an invariant violation detected afterwards, balances,
    allowances, positions, stakes and the event log are restored
  - Privileged calls are checked against the administrator first
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, Callable, Optional

from lockstake_core.access import AccessControl
from lockstake_core.asset_ledger import AssetLedger
from lockstake_core.errors import InvariantViolation, NotOwner, StakingError
from lockstake_core.events import EventLog
from lockstake_core.invariants import InvariantChecker
from lockstake_core.position_registry import PositionRegistry
from lockstake_core.staking import DEFAULT_CUSTODY_ACCOUNT, Stake, StakeLedger

if TYPE_CHECKING:
    from lockstake_core.config import LockStakeConfig

logger = logging.getLogger("lockstake_service")


class StakingService:
    """All-or-nothing facade over the staking components."""

    def __init__(
        self,
        admin: str,
        *,
        custody_account: str = DEFAULT_CUSTODY_ACCOUNT,
        tier_rates: dict[int, int] | None = None,
        symbol: str = "XPNET",
        decimals: int = 18,
        clock: Optional[Callable[[], int]] = None,
        strict_invariants: bool = True,
    ) -> None:
        self.events = EventLog()
        self.assets = AssetLedger(symbol=symbol, decimals=decimals, events=self.events)
        self.positions = PositionRegistry(events=self.events)
        self.access = AccessControl(admin, events=self.events)
        self.ledger = StakeLedger(
            self.assets,
            self.positions,
            custody_account=custody_account,
            tier_rates=tier_rates,
            clock=clock,
            events=self.events,
        )
        self.checker = InvariantChecker()
        self.strict_invariants = strict_invariants
        self._lock = threading.RLock()

    @classmethod
    def from_config(
        cls,
        cfg: LockStakeConfig,
        admin: str | None = None,
        clock: Optional[Callable[[], int]] = None,
    ) -> StakingService:
        """Build a service from config, minting genesis balances and the rewards pool."""
        from lockstake_core.config import build_tier_table

        admin = cfg.staking.admin or admin
        if not admin:
            raise ValueError("No administrator configured")
        svc = cls(
            admin,
            custody_account=cfg.staking.custody_account,
            tier_rates=build_tier_table(cfg.staking),
            symbol=cfg.asset.symbol,
            decimals=cfg.asset.decimals,
            clock=clock,
            strict_invariants=cfg.staking.strict_invariants,
        )
        for address, amount in cfg.asset.genesis.items():
            svc.assets.mint(address, int(amount))
        if cfg.asset.rewards_pool:
            svc.assets.mint(svc.custody_account, int(cfg.asset.rewards_pool))
        return svc

    @property
    def custody_account(self) -> str:
        return self.ledger.custody_account

    def _now(self, now: Optional[int]) -> int:
        return int(now) if now is not None else int(self.ledger.clock())

    # ── transactional execution ─────────────────────────────────────

    def export_state(self) -> dict[str, Any]:
        return {
            "access": self.access.export_state(),
            "assets": self.assets.export_state(),
            "positions": self.positions.export_state(),
            "stakes": self.ledger.export_state(),
        }

    def load_state(self, state: dict[str, Any]) -> None:
        # stakes first: a tier mismatch must leave the service untouched
        self.ledger.load_state(state["stakes"])
        self.access.load_state(state["access"])
        self.assets.load_state(state["assets"])
        self.positions.load_state(state["positions"])

    def _execute(self, op: str, now: int, fn: Callable[[], Any]) -> Any:
        with self._lock:
            saved = self.export_state()
            event_count = len(self.events)
            self.checker.capture(self.ledger)
            try:
                result = fn()
                if self.strict_invariants:
                    ok, msg = self.checker.verify(self.ledger, now)
                    if not ok:
                        raise InvariantViolation(msg)
            except Exception as exc:
                self.load_state(saved)
                self.events.truncate(event_count)
                if isinstance(exc, StakingError):
                    logger.warning(f"{op} rejected: {exc}",
                                   extra={"op": op, "code": exc.code})
                else:
                    logger.exception(f"{op} failed, state rolled back",
                                     extra={"op": op})
                raise
            return result

    # ── asset operations ────────────────────────────────────────────

    def approve(self, caller: str, amount: int, spender: str | None = None) -> None:
        """Allow *spender* (default: custody) to pull *amount* from *caller*."""
        target = spender or self.custody_account
        self._execute("approve", self._now(None),
                      lambda: self.assets.approve(caller, target, amount))

    def transfer(self, caller: str, to: str, amount: int) -> None:
        self._execute("transfer", self._now(None),
                      lambda: self.assets.transfer(caller, to, amount))

    def fund_rewards(self, caller: str, amount: int) -> None:
        """Top up the reward pool held in custody."""
        self.transfer(caller, self.custody_account, amount)

    def balance_of(self, account: str) -> int:
        with self._lock:
            return self.assets.balance_of(account)

    # ── staking operations ──────────────────────────────────────────

    def stake(self, caller: str, amount: int, lock_seconds: int,
              now: Optional[int] = None) -> int:
        now = self._now(now)
        return self._execute(
            "stake", now,
            lambda: self.ledger.stake(caller, amount, lock_seconds, now=now),
        )

    def available_rewards(self, handle: int, now: Optional[int] = None) -> int:
        with self._lock:
            return self.ledger.available_rewards(handle, now=self._now(now))

    def withdraw_rewards(self, caller: str, handle: int, amount: int,
                         now: Optional[int] = None) -> int:
        now = self._now(now)
        return self._execute(
            "withdraw_rewards", now,
            lambda: self.ledger.withdraw_rewards(caller, handle, amount, now=now),
        )

    def withdraw(self, caller: str, handle: int, now: Optional[int] = None) -> int:
        now = self._now(now)
        return self._execute(
            "withdraw", now,
            lambda: self.ledger.withdraw(caller, handle, now=now),
        )

    def set_uri(self, caller: str, handle: int, uri: str) -> None:
        """Attach metadata; allowed for the handle holder or the administrator."""
        def _set() -> None:
            if not self.access.is_admin(caller):
                if self.positions.owner_of(handle) != caller:
                    raise NotOwner(f"{caller} may not set the URI of {handle}")
            self.ledger.set_uri(handle, uri)

        self._execute("set_uri", self._now(None), _set)

    def transfer_position(self, caller: str, to: str, handle: int) -> None:
        def _transfer() -> None:
            self.ledger.get_stake(handle)
            self.positions.transfer(caller, to, handle)

        self._execute("transfer_position", self._now(None), _transfer)

    # ── administrative operations ───────────────────────────────────

    def owner(self) -> str:
        return self.access.owner()

    def transfer_ownership(self, caller: str, new_admin: str) -> None:
        self._execute("transfer_ownership", self._now(None),
                      lambda: self.access.transfer_ownership(caller, new_admin))

    def sudo_withdraw_token(
        self,
        caller: str,
        handle: int,
        recipient: str | None = None,
        settle_rewards: bool = True,
        now: Optional[int] = None,
    ) -> int:
        now = self._now(now)

        def _force() -> int:
            self.access.require_admin(caller)
            return self.ledger.sudo_withdraw_token(
                handle, recipient=recipient, settle_rewards=settle_rewards, now=now,
            )

        return self._execute("sudo_withdraw_token", now, _force)

    def sudo_add_token(self, caller: str, handle: int, delta: int) -> int:
        def _add() -> int:
            self.access.require_admin(caller)
            return self.ledger.sudo_add_token(handle, delta)

        return self._execute("sudo_add_token", self._now(None), _add)

    def sudo_deduct_token(self, caller: str, handle: int, delta: int) -> int:
        def _deduct() -> int:
            self.access.require_admin(caller)
            return self.ledger.sudo_deduct_token(handle, delta)

        return self._execute("sudo_deduct_token", self._now(None), _deduct)

    # ── queries ─────────────────────────────────────────────────────

    def get_stake(self, handle: int) -> Stake:
        with self._lock:
            return self.ledger.get_stake(handle)

    def stake_info(self, handle: int, now: Optional[int] = None) -> dict:
        with self._lock:
            info = self.ledger.stake_info(handle, now=self._now(now))
            token = self.positions.tokens.get(handle)
            if token is not None and not token.burned:
                info["owner"] = token.owner
                info["uri"] = token.uri
        return info

    def stakes_of(self, owner: str) -> list[Stake]:
        with self._lock:
            return self.ledger.stakes_of(owner)

    def positions_of(self, owner: str) -> list[int]:
        """Handles of the open positions held by *owner*."""
        return [s.handle for s in self.stakes_of(owner)]

    def is_mature(self, handle: int, now: Optional[int] = None) -> bool:
        with self._lock:
            return self.ledger.is_mature(handle, now=self._now(now))

    def maturity_time(self, handle: int) -> int:
        with self._lock:
            return self.ledger.maturity_time(handle)

    def accrued_total(self, handle: int, now: Optional[int] = None) -> int:
        with self._lock:
            return self.ledger.accrued_total(handle, now=self._now(now))

    def tier_info(self) -> list[dict]:
        return self.ledger.tier_info()

    def pool_summary(self, now: Optional[int] = None) -> dict:
        with self._lock:
            return self.ledger.pool_summary(now=self._now(now))

    def audit(self, now: Optional[int] = None) -> dict:
        """Run every invariant against the current state (no snapshot)."""
        now = self._now(now)
        with self._lock:
            ok, msg = InvariantChecker().verify(self.ledger, now)
        return {"ok": ok, "errors": msg.split("; ") if msg else []}
