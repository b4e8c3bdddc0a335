"""
Position-token registry for LockStake.

Every stake is represented by a non-fungible position token.  The
registry only knows about ownership and metadata:

  - Minting a fresh handle to an owner (handles are never reused)
  - Burning a handle (the token disappears; its number stays retired)
  - Owner lookup and owner-initiated transfer
  - An optional metadata URI per handle

Every mint / burn / transfer emits a ``PositionTransfer`` event, with
the zero address standing in for "nobody" on mint and burn.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from typing import Any

from lockstake_core.errors import NotOwner, UnknownHandle
from lockstake_core.events import ZERO_ADDRESS, EventLog


@dataclass
class PositionToken:
    """A single position token."""
    handle: int
    owner: str
    minter: str             # account the token was originally minted to
    uri: str = ""
    create_time: float = field(default_factory=time.time)
    burned: bool = False

    def to_dict(self) -> dict:
        return {
            "handle": self.handle,
            "owner": self.owner,
            "minter": self.minter,
            "uri": self.uri,
            "create_time": self.create_time,
            "burned": self.burned,
        }


class PositionRegistry:
    """Mints, burns and tracks ownership of position handles."""

    def __init__(self, name: str = "XpNet Stake Position",
                 events: EventLog | None = None):
        self.name = name
        self.events = events if events is not None else EventLog()
        self.tokens: dict[int, PositionToken] = {}
        self._next_handle: int = 1

    def _live(self, handle: int) -> PositionToken:
        token = self.tokens.get(handle)
        if token is None or token.burned:
            raise UnknownHandle(f"position {handle} does not exist")
        return token

    # ── lifecycle ───────────────────────────────────────────────────

    def mint(self, owner: str, now: float | None = None) -> int:
        """Mint a fresh handle to *owner* and return it."""
        handle = self._next_handle
        self._next_handle += 1
        self.tokens[handle] = PositionToken(
            handle=handle,
            owner=owner,
            minter=owner,
            create_time=now if now is not None else time.time(),
        )
        self.events.emit("PositionTransfer",
                         sender=ZERO_ADDRESS, to=owner, handle=handle)
        return handle

    def burn(self, handle: int) -> None:
        token = self._live(handle)
        token.burned = True
        self.events.emit("PositionTransfer",
                         sender=token.owner, to=ZERO_ADDRESS, handle=handle)

    def transfer(self, caller: str, to: str, handle: int) -> None:
        """Owner-initiated transfer of a live handle."""
        token = self._live(handle)
        if caller != token.owner:
            raise NotOwner(f"{caller} does not own position {handle}")
        token.owner = to
        self.events.emit("PositionTransfer",
                         sender=caller, to=to, handle=handle)

    # ── queries ─────────────────────────────────────────────────────

    def owner_of(self, handle: int) -> str:
        return self._live(handle).owner

    def exists(self, handle: int) -> bool:
        token = self.tokens.get(handle)
        return token is not None and not token.burned

    def tokens_of(self, account: str) -> list[int]:
        return sorted(
            t.handle for t in self.tokens.values()
            if t.owner == account and not t.burned
        )

    # ── metadata ────────────────────────────────────────────────────

    def set_metadata(self, handle: int, uri: str) -> None:
        self._live(handle).uri = uri

    def token_uri(self, handle: int) -> str:
        return self._live(handle).uri

    # ── state export (storage / rollback) ───────────────────────────

    def export_state(self) -> dict[str, Any]:
        return {
            "next_handle": self._next_handle,
            "tokens": [asdict(t) for t in self.tokens.values()],
        }

    def load_state(self, state: dict[str, Any]) -> None:
        self._next_handle = state["next_handle"]
        self.tokens = {
            row["handle"]: PositionToken(**row) for row in state["tokens"]
        }
