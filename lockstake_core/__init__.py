"""
LockStake - a time-locked staking ledger.

Key features:
- Four fixed lock tiers with annual basis-point reward rates
- Transferable position tokens (the holder owns the stake)
- Partial reward withdrawals at any time, full withdrawal at maturity
- Administrator overrides: forced closure and reward-base corrections
- All-or-nothing calls with post-call invariant checks
- Signed REST API with SQLite persistence
"""

__version__ = "0.1.0"
__all__ = [
    "errors",
    "events",
    "asset_ledger",
    "position_registry",
    "staking",
    "access",
    "invariants",
    "service",
    "config",
    "logging_config",
    "crypto_utils",
    "wallet",
    "storage",
    "api",
]
