#!/usr/bin/env python3
"""
LockStake Staker Runner: starts a staking service with:
  - Config-driven ledger, tiers and genesis balances
  - SQLite persistence (restore on start, snapshot on stop)
  - The signed REST API
  - An interactive operator CLI

Usage:
    python run_staker.py --config lockstake.toml --port 8080

Environment variables (alternative to flags):
    LOCKSTAKE_ADMIN, LOCKSTAKE_API_HOST, LOCKSTAKE_API_PORT, LOCKSTAKE_DB_PATH,
    LOCKSTAKE_WALLET_PASS (passphrase for the encrypted runner wallet)
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
from pathlib import Path

# ---------------------------------------------------------------------------
# Ensure the project root is in sys.path so imports work before pip install
# ---------------------------------------------------------------------------
PROJECT_ROOT = os.path.dirname(os.path.abspath(__file__))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

from lockstake_core.config import LockStakeConfig, load_config  # noqa: E402
from lockstake_core.logging_config import setup_logging  # noqa: E402
from lockstake_core.service import StakingService  # noqa: E402
from lockstake_core.storage import StakeStore  # noqa: E402
from lockstake_core.wallet import Wallet  # noqa: E402

logger = logging.getLogger("staker")


def load_or_create_wallet(path: str, passphrase: str) -> Wallet:
    """Decrypt the runner wallet at *path*, creating it on first start."""
    p = Path(path)
    if p.exists():
        wallet = Wallet.import_encrypted(json.loads(p.read_text()), passphrase)
        logger.info(f"Loaded wallet {wallet.address}")
        return wallet
    wallet = Wallet.create()
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(wallet.export_encrypted(passphrase), indent=2))
    logger.info(f"Created wallet {wallet.address} at {p}")
    return wallet


# ===================================================================
#  Staker node
# ===================================================================

class StakerNode:
    """Combines the staking service, persistence and API into one runnable unit."""

    def __init__(self, config: LockStakeConfig, wallet: Wallet):
        self.config = config
        self.wallet = wallet
        self.service = StakingService.from_config(config, admin=wallet.address)
        self.store: StakeStore | None = None
        self._api = None

    # ---- lifecycle ----

    async def start(self) -> None:
        if self.config.storage.enabled:
            self.store = StakeStore(self.config.storage.path)
            if self.store.restore_service(self.service):
                summary = self.service.pool_summary()
                logger.info(
                    f"Restored: {summary['open_stakes']} open stakes, "
                    f"custody={summary['custody_balance']}"
                )
            else:
                self.store.snapshot_service(self.service)

        audit = self.service.audit()
        if not audit["ok"]:
            logger.error(f"Invariant audit failed on start: {audit['errors']}")

        if self.config.api.enabled:
            from lockstake_core.api import APIServer
            self._api = APIServer(
                self.service,
                host=self.config.api.host,
                port=self.config.api.port,
                api_config=self.config.api,
                store=self.store,
            )
            await self._api.start()

        logger.info(
            f"Staker started | admin={self.service.owner()} | "
            f"custody={self.service.custody_account}"
        )

    async def stop(self) -> None:
        if self._api is not None:
            await self._api.stop()
        if self.store is not None:
            logger.info("Saving staking state to database...")
            self.store.snapshot_service(self.service)
            self.store.close()

    def status(self) -> dict:
        return {
            "address": self.wallet.address,
            "admin": self.service.owner(),
            "pool": self.service.pool_summary(),
            "audit": self.service.audit(),
            "api": f"{self.config.api.host}:{self.config.api.port}"
                   if self.config.api.enabled else None,
        }


# ===================================================================
#  Interactive CLI
# ===================================================================

async def interactive_cli(node: StakerNode):
    """Read-only operator console for the running staker."""
    loop = asyncio.get_event_loop()

    def print_help():
        print("""
╔══════════════════════════════════════════════════════════════╗
║  LockStake Staker CLI                                        ║
╠══════════════════════════════════════════════════════════════╣
║  status           - Show service status                      ║
║  balance [addr]   - Check asset balance                      ║
║  tiers            - List lock tiers and rates                ║
║  stake <handle>   - Show a stake record                      ║
║  positions <addr> - Open positions held by an address        ║
║  audit            - Run the invariant audit                  ║
║  help             - Show this help                           ║
║  quit             - Shutdown staker                          ║
╚══════════════════════════════════════════════════════════════╝
""")

    print_help()
    svc = node.service

    while True:
        try:
            line = await loop.run_in_executor(None, lambda: input("\n[lockstake] > "))
            parts = line.strip().split()
            if not parts:
                continue

            cmd = parts[0].lower()

            if cmd == "help":
                print_help()

            elif cmd == "status":
                print(json.dumps(node.status(), indent=2, default=str))

            elif cmd == "balance":
                addr = parts[1] if len(parts) > 1 else node.wallet.address
                print(f"  {addr}: {svc.balance_of(addr)} {svc.assets.symbol}")

            elif cmd == "tiers":
                for tier in svc.tier_info():
                    print(f"  {tier['lock_days']:>3} days  {tier['rate_pct']}")

            elif cmd == "stake":
                if len(parts) < 2:
                    print("  Usage: stake <handle>")
                    continue
                print(json.dumps(svc.stake_info(int(parts[1])), indent=2, default=str))

            elif cmd == "positions":
                if len(parts) < 2:
                    print("  Usage: positions <address>")
                    continue
                for record in svc.stakes_of(parts[1]):
                    print(f"  #{record.handle}: {record.amount} "
                          f"for {record.lock_seconds // 86_400} days")

            elif cmd == "audit":
                print(json.dumps(svc.audit(), indent=2))

            elif cmd in ("quit", "exit", "q"):
                print("Shutting down...")
                await node.stop()
                break

            else:
                print(f"  Unknown command: {cmd}. Type 'help'.")

        except (EOFError, KeyboardInterrupt):
            print("\nShutting down...")
            await node.stop()
            break
        except Exception as e:
            print(f"  Error: {e}")


# ===================================================================
#  Main entry point
# ===================================================================

def parse_args(argv: list[str] | None = None):
    p = argparse.ArgumentParser(description="LockStake Staking Service")
    p.add_argument("--config", default=None, help="Path to lockstake.toml config file")
    p.add_argument("--host", default=None, help="API listen host")
    p.add_argument("--port", type=int, default=None, help="API listen port (enables the API)")
    p.add_argument("--no-cli", action="store_true",
                   help="Run without the interactive CLI (daemon mode)")
    return p.parse_args(argv)


async def main(argv: list[str] | None = None):
    args = parse_args(argv)

    # Load config (TOML + env overrides)
    cfg = load_config(args.config)

    # CLI flags override config
    if args.host:
        cfg.api.host = args.host
    if args.port:
        cfg.api.port = args.port
        cfg.api.enabled = True

    setup_logging(level=cfg.logging.level, fmt=cfg.logging.format,
                  log_file=cfg.logging.file)

    passphrase = os.environ.get("LOCKSTAKE_WALLET_PASS")
    if not passphrase:
        logger.error("LOCKSTAKE_WALLET_PASS must be set to unlock the runner wallet")
        raise SystemExit(2)
    wallet = load_or_create_wallet(cfg.wallet.wallet_file, passphrase)

    node = StakerNode(cfg, wallet)
    await node.start()

    if args.no_cli:
        try:
            while True:
                await asyncio.sleep(1)
        except (KeyboardInterrupt, asyncio.CancelledError):
            await node.stop()
    else:
        await interactive_cli(node)


if __name__ == "__main__":
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())


def main_sync():
    """Synchronous entry point for console_scripts."""
    with contextlib.suppress(KeyboardInterrupt):
        asyncio.run(main())
