"""
Event records emitted by the LockStake components.

Each component appends to a shared ``EventLog`` instead of returning
side-channel data, so callers (tests, the REST layer, storage) observe
exactly what a contract log would expose:

  - ``Transfer`` / ``Approval``   AssetLedger balance movements
  - ``PositionTransfer``          PositionRegistry mint / burn / transfer
  - ``StakeCreated``              new position ``{handle, amount, lock_seconds, timestamp}``
  - ``RewardsWithdrawn``          partial reward payout ``{handle, amount}``
  - ``StakeWithdrawn``            full withdrawal ``{handle, total_paid}``
  - ``StakeForceClosed``          administrator forced closure
  - ``CorrectionAdjusted``        administrator correction change
  - ``URISet``                    metadata attached to a handle
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable

logger = logging.getLogger("lockstake_events")

ZERO_ADDRESS = "x" + "0" * 40


@dataclass
class Event:
    """A single emitted event."""
    name: str
    args: dict[str, Any]
    index: int = 0          # position in the log, assigned on emit
    timestamp: int = 0

    def __getitem__(self, key: str) -> Any:
        return self.args[key]

    def to_dict(self) -> dict:
        return {
            "index": self.index,
            "name": self.name,
            "timestamp": self.timestamp,
            "args": dict(self.args),
        }


Listener = Callable[[Event], None]


@dataclass
class EventLog:
    """Append-only event log with synchronous subscribers."""
    events: list[Event] = field(default_factory=list)
    _listeners: list[Listener] = field(default_factory=list, repr=False)

    def emit(self, name: str, timestamp: int = 0, **args: Any) -> Event:
        event = Event(name=name, args=args, index=len(self.events),
                      timestamp=timestamp)
        self.events.append(event)
        logger.debug(f"{name} {args}")
        for listener in list(self._listeners):
            listener(event)
        return event

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: Listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def filter(self, name: str, **match: Any) -> list[Event]:
        """Events called *name* whose args contain every ``match`` item."""
        return [
            e for e in self.events
            if e.name == name
            and all(e.args.get(k) == v for k, v in match.items())
        ]

    def last(self, name: str) -> Event | None:
        for event in reversed(self.events):
            if event.name == name:
                return event
        return None

    def truncate(self, length: int) -> None:
        """Drop every event after the first *length* (used on rollback)."""
        del self.events[length:]

    def __len__(self) -> int:
        return len(self.events)
