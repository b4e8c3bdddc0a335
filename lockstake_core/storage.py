"""
SQLite-based persistence layer for LockStake service state.

Stores asset balances and allowances, position tokens, stake records and
a handful of scalar counters so that a staking node can recover its
state after restart.

Amounts are uint256 values and do not fit SQLite's 64-bit INTEGER, so
they are stored as decimal TEXT and converted back on load.

Usage:
    store = StakeStore("data/lockstake.db")
    store.snapshot_service(service)
    ...
    store.restore_service(service)
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from lockstake_core.service import StakingService

logger = logging.getLogger("lockstake_storage")


class StakeStore:
    """Thin SQLite wrapper for persisting staking state."""

    CURRENT_SCHEMA_VERSION = 1

    def __init__(self, db_path: str = "data/lockstake.db"):
        self.db_path = db_path
        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(db_path)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA busy_timeout = 5000")
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._create_tables()
        self._ensure_schema_version()
        logger.info(f"Storage opened: {db_path}")

    # ── schema ───────────────────────────────────────────────────

    def _create_tables(self) -> None:
        c = self._conn
        c.execute("""
            CREATE TABLE IF NOT EXISTS balances (
                address TEXT PRIMARY KEY,
                amount  TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS allowances (
                owner   TEXT NOT NULL,
                spender TEXT NOT NULL,
                amount  TEXT NOT NULL,
                PRIMARY KEY (owner, spender)
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS positions (
                handle      INTEGER PRIMARY KEY,
                owner       TEXT NOT NULL,
                minter      TEXT NOT NULL,
                uri         TEXT NOT NULL DEFAULT '',
                create_time REAL NOT NULL,
                burned      INTEGER NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS stakes (
                handle            INTEGER PRIMARY KEY,
                staker            TEXT NOT NULL,
                amount            TEXT NOT NULL,
                start_time        INTEGER NOT NULL,
                lock_seconds      INTEGER NOT NULL,
                correction        TEXT NOT NULL DEFAULT '0',
                withdrawn_rewards TEXT NOT NULL DEFAULT '0',
                uri_set           INTEGER NOT NULL DEFAULT 0,
                closed            INTEGER NOT NULL DEFAULT 0
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS meta (
                key   TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        c.execute("""
            CREATE TABLE IF NOT EXISTS schema_version (
                id      INTEGER PRIMARY KEY CHECK (id = 1),
                version INTEGER NOT NULL
            )
        """)
        c.commit()

    def _ensure_schema_version(self) -> None:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        if row is None:
            self._conn.execute(
                "INSERT INTO schema_version (id, version) VALUES (1, ?)",
                (self.CURRENT_SCHEMA_VERSION,),
            )
            self._conn.commit()
        elif row["version"] > self.CURRENT_SCHEMA_VERSION:
            raise RuntimeError(
                f"Database schema v{row['version']} is newer than this software "
                f"(v{self.CURRENT_SCHEMA_VERSION}).  Upgrade LockStake."
            )

    def schema_version(self) -> int:
        row = self._conn.execute(
            "SELECT version FROM schema_version WHERE id = 1"
        ).fetchone()
        return row["version"]

    # ── loaders ──────────────────────────────────────────────────

    def load_meta(self) -> dict[str, str]:
        rows = self._conn.execute("SELECT key, value FROM meta").fetchall()
        return {r["key"]: r["value"] for r in rows}

    def load_balances(self) -> dict[str, int]:
        rows = self._conn.execute("SELECT address, amount FROM balances").fetchall()
        return {r["address"]: int(r["amount"]) for r in rows}

    def load_allowances(self) -> dict[tuple[str, str], int]:
        rows = self._conn.execute(
            "SELECT owner, spender, amount FROM allowances"
        ).fetchall()
        return {(r["owner"], r["spender"]): int(r["amount"]) for r in rows}

    def load_positions(self) -> list[dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM positions ORDER BY handle").fetchall()
        return [
            {**dict(r), "burned": bool(r["burned"])}
            for r in rows
        ]

    def load_stakes(self) -> list[dict[str, Any]]:
        rows = self._conn.execute("SELECT * FROM stakes ORDER BY handle").fetchall()
        return [
            {
                "handle": r["handle"],
                "staker": r["staker"],
                "amount": int(r["amount"]),
                "start_time": r["start_time"],
                "lock_seconds": r["lock_seconds"],
                "correction": int(r["correction"]),
                "withdrawn_rewards": int(r["withdrawn_rewards"]),
                "uri_set": bool(r["uri_set"]),
                "closed": bool(r["closed"]),
            }
            for r in rows
        ]

    def has_state(self) -> bool:
        return "admin" in self.load_meta()

    # ── bulk helpers ─────────────────────────────────────────────

    def snapshot_service(self, service: StakingService) -> None:
        """Persist the full current state of a service atomically.

        The previous snapshot is replaced inside a single transaction so
        a crash mid-write leaves the old state intact.
        """
        state = service.export_state()
        assets = state["assets"]
        positions = state["positions"]
        stakes = state["stakes"]

        c = self._conn
        try:
            c.execute("BEGIN IMMEDIATE")
            for table in ("balances", "allowances", "positions", "stakes", "meta"):
                c.execute(f"DELETE FROM {table}")

            c.executemany(
                "INSERT INTO balances (address, amount) VALUES (?, ?)",
                [(addr, str(amt)) for addr, amt in assets["balances"].items()],
            )
            c.executemany(
                "INSERT INTO allowances (owner, spender, amount) VALUES (?, ?, ?)",
                [(o, s, str(amt)) for (o, s), amt in assets["allowances"].items()],
            )
            c.executemany(
                """INSERT INTO positions
                   (handle, owner, minter, uri, create_time, burned)
                   VALUES (?, ?, ?, ?, ?, ?)""",
                [
                    (t["handle"], t["owner"], t["minter"], t["uri"],
                     t["create_time"], int(t["burned"]))
                    for t in positions["tokens"]
                ],
            )
            c.executemany(
                """INSERT INTO stakes
                   (handle, staker, amount, start_time, lock_seconds,
                    correction, withdrawn_rewards, uri_set, closed)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                [
                    (s["handle"], s["staker"], str(s["amount"]), s["start_time"],
                     s["lock_seconds"], str(s["correction"]),
                     str(s["withdrawn_rewards"]), int(s["uri_set"]),
                     int(s["closed"]))
                    for s in stakes["stakes"]
                ],
            )
            c.executemany(
                "INSERT INTO meta (key, value) VALUES (?, ?)",
                [
                    ("admin", state["access"]["admin"]),
                    ("total_supply", str(assets["total_supply"])),
                    ("next_handle", str(positions["next_handle"])),
                    ("total_locked", str(stakes["total_locked"])),
                    ("total_rewards_paid", str(stakes["total_rewards_paid"])),
                ],
            )
            c.execute("COMMIT")
        except Exception:
            c.execute("ROLLBACK")
            raise
        logger.debug(f"Snapshot written: {len(stakes['stakes'])} stakes")

    def restore_service(self, service: StakingService) -> bool:
        """
        Load the stored snapshot into *service*.

        Returns False (leaving the service untouched) if the database
        holds no snapshot yet.
        """
        meta = self.load_meta()
        if "admin" not in meta:
            return False
        service.load_state({
            "access": {"admin": meta["admin"]},
            "assets": {
                "balances": self.load_balances(),
                "allowances": self.load_allowances(),
                "total_supply": int(meta["total_supply"]),
            },
            "positions": {
                "next_handle": int(meta["next_handle"]),
                "tokens": self.load_positions(),
            },
            "stakes": {
                "stakes": self.load_stakes(),
                "total_locked": int(meta["total_locked"]),
                "total_rewards_paid": int(meta["total_rewards_paid"]),
            },
        })
        logger.info(
            f"Restored {len(service.ledger.stakes)} stakes from {self.db_path}"
        )
        return True

    # ── lifecycle ────────────────────────────────────────────────

    def close(self) -> None:
        self._conn.close()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
