"""
Single-administrator access control for LockStake.

The administrator defaults to the deploying account and can hand the
role over with ``transfer_ownership``.  Staking operations never consult
this object directly; ``StakingService`` calls ``require_admin`` before
forwarding a privileged call to the ledger.
"""

from __future__ import annotations

import logging

from lockstake_core.errors import NotAdmin
from lockstake_core.events import EventLog

logger = logging.getLogger("lockstake_access")


class AccessControl:
    """Holds the administrator identity."""

    def __init__(self, admin: str, events: EventLog | None = None):
        if not admin:
            raise ValueError("administrator address required")
        self._admin = admin
        self.events = events if events is not None else EventLog()

    def owner(self) -> str:
        return self._admin

    def is_admin(self, caller: str) -> bool:
        return caller == self._admin

    def require_admin(self, caller: str) -> None:
        if caller != self._admin:
            raise NotAdmin(f"{caller} is not the administrator")

    def transfer_ownership(self, caller: str, new_admin: str) -> None:
        self.require_admin(caller)
        if not new_admin:
            raise ValueError("new administrator address required")
        previous, self._admin = self._admin, new_admin
        self.events.emit("OwnershipTransferred", previous=previous, new=new_admin)
        logger.warning(f"Administrator changed: {previous} → {new_admin}")

    def export_state(self) -> dict:
        return {"admin": self._admin}

    def load_state(self, state: dict) -> None:
        self._admin = state["admin"]
