"""
Fungible asset ledger for LockStake.

A minimal ERC-20-like balance / allowance store:

  - ``transfer(sender, to, amount)``
  - ``transfer_from(spender, owner, to, amount)``  (consumes allowance)
  - ``approve(owner, spender, amount)``
  - ``balance_of(account)`` / ``allowance(owner, spender)``
  - ``mint(to, amount)``  genesis funding only

Amounts are non-negative integers in the asset's smallest unit, bounded
to uint256.  Every movement emits a ``Transfer`` (or ``Approval``) event
on the shared ``EventLog``.
"""

from __future__ import annotations

from typing import Any

from lockstake_core.errors import (
    AmountOverflow,
    InsufficientAllowance,
    InsufficientFunds,
    InvalidAmount,
)
from lockstake_core.events import ZERO_ADDRESS, EventLog

UINT256_MAX: int = 2 ** 256 - 1


def checked_uint(value: int, name: str = "amount") -> int:
    """Reject non-integers, negatives and values outside uint256."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmount(f"{name} must be an integer")
    if value < 0:
        raise InvalidAmount(f"{name} must be non-negative")
    if value > UINT256_MAX:
        raise AmountOverflow(f"{name} exceeds uint256")
    return value


class AssetLedger:
    """In-memory fungible token with balances and allowances."""

    def __init__(self, symbol: str = "XPNET", decimals: int = 18,
                 events: EventLog | None = None):
        self.symbol = symbol
        self.decimals = decimals
        self.events = events if events is not None else EventLog()
        self.balances: dict[str, int] = {}
        self.allowances: dict[tuple[str, str], int] = {}
        self.total_supply: int = 0

    # ── queries ─────────────────────────────────────────────────────

    def balance_of(self, account: str) -> int:
        return self.balances.get(account, 0)

    def allowance(self, owner: str, spender: str) -> int:
        return self.allowances.get((owner, spender), 0)

    # ── mutations ───────────────────────────────────────────────────

    def mint(self, to: str, amount: int) -> None:
        checked_uint(amount)
        if self.total_supply + amount > UINT256_MAX:
            raise AmountOverflow("total supply exceeds uint256")
        self.balances[to] = self.balance_of(to) + amount
        self.total_supply += amount
        self.events.emit("Transfer", sender=ZERO_ADDRESS, to=to, amount=amount)

    def approve(self, owner: str, spender: str, amount: int) -> None:
        checked_uint(amount)
        self.allowances[(owner, spender)] = amount
        self.events.emit("Approval", owner=owner, spender=spender, amount=amount)

    def transfer(self, sender: str, to: str, amount: int) -> None:
        checked_uint(amount)
        if self.balance_of(sender) < amount:
            raise InsufficientFunds(
                f"balance of {sender} is lower than {amount}"
            )
        self._move(sender, to, amount)

    def transfer_from(self, spender: str, owner: str, to: str, amount: int) -> None:
        checked_uint(amount)
        allowed = self.allowance(owner, spender)
        if allowed < amount:
            raise InsufficientAllowance(
                f"allowance of {spender} over {owner} is lower than {amount}"
            )
        if self.balance_of(owner) < amount:
            raise InsufficientFunds(
                f"balance of {owner} is lower than {amount}"
            )
        self.allowances[(owner, spender)] = allowed - amount
        self._move(owner, to, amount)

    def _move(self, sender: str, to: str, amount: int) -> None:
        self.balances[sender] = self.balance_of(sender) - amount
        self.balances[to] = self.balance_of(to) + amount
        self.events.emit("Transfer", sender=sender, to=to, amount=amount)

    # ── state export (storage / rollback) ───────────────────────────

    def export_state(self) -> dict[str, Any]:
        return {
            "balances": dict(self.balances),
            "allowances": dict(self.allowances),
            "total_supply": self.total_supply,
        }

    def load_state(self, state: dict[str, Any]) -> None:
        self.balances = dict(state["balances"])
        self.allowances = dict(state["allowances"])
        self.total_supply = state["total_supply"]
