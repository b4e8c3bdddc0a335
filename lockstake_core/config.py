"""
TOML-based configuration for LockStake.

Loads settings from a TOML file and/or environment variables.
Environment variables take precedence over file values.

Usage:
    from lockstake_core.config import load_config
    cfg = load_config("lockstake.toml")

Example file:

    [staking]
    admin = "x3f1c..."
    custody_account = "xstakecustody"

    [staking.tiers]          # lock days -> annual rate in basis points
    90 = 450
    180 = 750
    270 = 1000
    365 = 1250

    [asset]
    symbol = "XPNET"
    rewards_pool = 1000000

    [asset.genesis]
    "x3f1c..." = 100000000000
"""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

if sys.version_info >= (3, 11):
    import tomllib
else:
    try:
        import tomllib  # type: ignore[import]
    except ModuleNotFoundError:
        import tomli as tomllib  # type: ignore[import,no-redef]

from lockstake_core.staking import (
    DEFAULT_CUSTODY_ACCOUNT,
    DEFAULT_TIER_RATES,
    SECONDS_PER_DAY,
    validate_tier_rates,
)


def _default_tiers() -> dict[str, int]:
    return {str(secs // SECONDS_PER_DAY): bps for secs, bps in DEFAULT_TIER_RATES.items()}


@dataclass
class StakingConfig:
    """Ledger settings.

    ``tiers`` maps lock duration in days (TOML keys are strings) to the
    annual rate in basis points.  Exactly four tiers are required.
    When ``admin`` is empty the runner uses its own wallet address.
    """
    admin: str = ""
    custody_account: str = DEFAULT_CUSTODY_ACCOUNT
    tiers: dict[str, int] = field(default_factory=_default_tiers)
    strict_invariants: bool = True


@dataclass
class AssetConfig:
    """Fungible asset settings and genesis balances."""
    symbol: str = "XPNET"
    decimals: int = 18
    genesis: dict[str, int] = field(default_factory=dict)
    # Minted straight into custody to fund rewards
    rewards_pool: int = 0


@dataclass
class WalletConfig:
    """Runner wallet persistence (encrypted with ``LOCKSTAKE_WALLET_PASS``)."""
    wallet_file: str = "data/wallet.json"


@dataclass
class APIConfig:
    """REST API settings."""
    enabled: bool = False
    host: str = "127.0.0.1"
    port: int = 8080
    rate_limit_rpm: int = 120          # max requests per minute per IP (0 = unlimited)
    cors_origins: list[str] = field(default_factory=list)
    max_body_bytes: int = 65_536


@dataclass
class StorageConfig:
    """Persistence settings."""
    enabled: bool = False
    path: str = "data/lockstake.db"


@dataclass
class LoggingConfig:
    """Logging settings."""
    level: str = "INFO"
    format: str = "human"   # "human" or "json"
    file: str | None = None


@dataclass
class LockStakeConfig:
    """Top-level configuration container."""
    staking: StakingConfig = field(default_factory=StakingConfig)
    asset: AssetConfig = field(default_factory=AssetConfig)
    wallet: WalletConfig = field(default_factory=WalletConfig)
    api: APIConfig = field(default_factory=APIConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _merge(dc: Any, raw: dict[str, Any]) -> None:
    """Merge a raw dict into a dataclass instance (in-place)."""
    for key, value in raw.items():
        key_under = key.replace("-", "_")
        if hasattr(dc, key_under):
            setattr(dc, key_under, value)


def build_tier_table(staking: StakingConfig) -> dict[int, int]:
    """Convert the ``[staking.tiers]`` table to ``{lock_seconds: rate_bps}``."""
    table: dict[int, int] = {}
    for days, bps in staking.tiers.items():
        try:
            secs = int(days) * SECONDS_PER_DAY
        except (TypeError, ValueError):
            raise ValueError(f"Tier key must be a whole number of days: {days!r}")
        table[secs] = bps
    return validate_tier_rates(table)


def load_config(path: str | None = None) -> LockStakeConfig:
    """
    Load configuration from a TOML file, then overlay environment variables.

    Env-var mapping:
        LOCKSTAKE_ADMIN         -> staking.admin
        LOCKSTAKE_API_HOST      -> api.host
        LOCKSTAKE_API_PORT      -> api.port  (also enables the API)
        LOCKSTAKE_CORS_ORIGINS  -> api.cors_origins (comma-separated)
        LOCKSTAKE_LOG_LEVEL     -> logging.level
        LOCKSTAKE_LOG_FMT       -> logging.format
        LOCKSTAKE_DB_PATH       -> storage.path  (also enables storage)
    """
    cfg = LockStakeConfig()

    # ── TOML file ────────────────────────────────────────────────
    if path is not None:
        p = Path(path)
        if p.exists():
            with open(p, "rb") as f:
                data = tomllib.load(f)
            for section_name, section_dc in [
                ("staking", cfg.staking),
                ("asset", cfg.asset),
                ("wallet", cfg.wallet),
                ("api", cfg.api),
                ("storage", cfg.storage),
                ("logging", cfg.logging),
            ]:
                if section_name in data:
                    _merge(section_dc, data[section_name])

    # ── Environment variable overrides ───────────────────────────
    if v := os.environ.get("LOCKSTAKE_ADMIN"):
        cfg.staking.admin = v
    if v := os.environ.get("LOCKSTAKE_API_HOST"):
        cfg.api.host = v
    if v := os.environ.get("LOCKSTAKE_API_PORT"):
        cfg.api.port = int(v)
        cfg.api.enabled = True
    if v := os.environ.get("LOCKSTAKE_CORS_ORIGINS"):
        cfg.api.cors_origins = [o.strip() for o in v.split(",") if o.strip()]
    if v := os.environ.get("LOCKSTAKE_LOG_LEVEL"):
        cfg.logging.level = v.upper()
    if v := os.environ.get("LOCKSTAKE_LOG_FMT"):
        cfg.logging.format = v
    if v := os.environ.get("LOCKSTAKE_DB_PATH"):
        cfg.storage.path = v
        cfg.storage.enabled = True

    return cfg
