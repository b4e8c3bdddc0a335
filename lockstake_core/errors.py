"""
Error taxonomy for LockStake.

Every failure raised by the ledger is a ``StakingError`` (itself a
``ValueError`` so callers that only guard against bad input still catch
it).  Each class carries a stable ``code`` that the REST layer returns
verbatim, so clients can branch on it without parsing messages.

Nothing here is retried internally: a raised error means the call had no
effect on ledger state.
"""

from __future__ import annotations


class StakingError(ValueError):
    """Base class for all ledger failures."""

    code = "StakingError"

    def __init__(self, message: str = ""):
        super().__init__(message or self.code)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": str(self)}


class InsufficientFunds(StakingError):
    code = "InsufficientFunds"


class InsufficientAllowance(InsufficientFunds):
    code = "InsufficientAllowance"


class InvalidDuration(StakingError):
    code = "InvalidDuration"


class InvalidAmount(StakingError):
    code = "InvalidAmount"


class UnknownHandle(StakingError):
    code = "UnknownHandle"


class StakeClosed(UnknownHandle):
    """Handle existed but its position has already been closed."""
    code = "StakeClosed"


class NotOwner(StakingError):
    code = "NotOwner"


class ExceedsAvailable(StakingError):
    code = "ExceedsAvailable"


class NotMatured(StakingError):
    code = "NotMatured"


class URIAlreadySet(StakingError):
    code = "URIAlreadySet"


class CorrectionUnderflow(StakingError):
    code = "CorrectionUnderflow"


class NotAdmin(StakingError):
    code = "NotAdmin"


class AmountOverflow(StakingError):
    code = "AmountOverflow"


class InvariantViolation(StakingError):
    code = "InvariantViolation"


ERROR_TYPES: dict[str, type[StakingError]] = {
    cls.code: cls
    for cls in (
        InsufficientFunds,
        InsufficientAllowance,
        InvalidDuration,
        InvalidAmount,
        UnknownHandle,
        StakeClosed,
        NotOwner,
        ExceedsAvailable,
        NotMatured,
        URIAlreadySet,
        CorrectionUnderflow,
        NotAdmin,
        AmountOverflow,
        InvariantViolation,
    )
}
