"""Tests for the invariant checker module."""

import pytest

from conftest import ALICE, DAY, T0, TIER_90, TIER_365
from lockstake_core.asset_ledger import AssetLedger
from lockstake_core.invariants import InvariantChecker, LedgerSnapshot
from lockstake_core.position_registry import PositionRegistry
from lockstake_core.staking import StakeLedger


@pytest.fixture
def ledger():
    assets = AssetLedger()
    positions = PositionRegistry(events=assets.events)
    stakes = StakeLedger(assets, positions, clock=lambda: T0)
    assets.mint(ALICE, 10_000_000)
    assets.mint(stakes.custody_account, 1_000_000)
    assets.approve(ALICE, stakes.custody_account, 10_000_000)
    stakes.stake(ALICE, 1_000_000, TIER_365, now=T0)
    stakes.stake(ALICE, 5_000, TIER_90, now=T0)
    return stakes


@pytest.fixture
def checker():
    return InvariantChecker()


class TestLedgerSnapshot:
    def test_capture(self, checker, ledger):
        assert checker.capture(ledger) is None  # capture stores internally
        snap = checker._snapshot
        assert isinstance(snap, LedgerSnapshot)
        assert snap.custody_balance == 2_005_000
        assert snap.withdrawn == {1: 0, 2: 0}
        assert snap.closed == {1: False, 2: False}


class TestVerify:
    def test_clean_state_passes(self, checker, ledger):
        checker.capture(ledger)
        assert checker.verify(ledger, T0 + 10 * DAY) == (True, "")

    def test_verify_without_capture(self, checker, ledger):
        ok, _ = checker.verify(ledger, T0)
        assert ok

    def test_unknown_tier(self, checker, ledger):
        checker.capture(ledger)
        ledger.stakes[1].lock_seconds = 7 * DAY
        ok, msg = checker.verify(ledger, T0)
        assert not ok
        assert "unknown tier" in msg

    def test_negative_reward_base(self, checker, ledger):
        checker.capture(ledger)
        ledger.stakes[2].correction = -5_001
        ok, msg = checker.verify(ledger, T0)
        assert not ok
        assert "negative reward base" in msg

    def test_withdrawn_decrease(self, checker, ledger):
        ledger.stakes[1].withdrawn_rewards = 10
        checker.capture(ledger)
        ledger.stakes[1].withdrawn_rewards = 9
        ok, msg = checker.verify(ledger, T0)
        assert not ok
        assert "decreased" in msg

    def test_reopen(self, checker, ledger):
        ledger.stakes[2].closed = True
        ledger.positions.burn(2)
        ledger.total_locked -= 5_000
        checker.capture(ledger)
        ledger.stakes[2].closed = False
        ok, msg = checker.verify(ledger, T0)
        assert not ok
        assert "reopened" in msg

    def test_uri_flag_reset(self, checker, ledger):
        ledger.stakes[1].uri_set = True
        checker.capture(ledger)
        ledger.stakes[1].uri_set = False
        ok, msg = checker.verify(ledger, T0)
        assert not ok
        assert "URI flag" in msg

    def test_open_stake_without_handle(self, checker, ledger):
        checker.capture(ledger)
        ledger.positions.burn(1)
        ok, msg = checker.verify(ledger, T0)
        assert not ok
        assert "no live handle" in msg

    def test_locked_total_mismatch(self, checker, ledger):
        checker.capture(ledger)
        ledger.total_locked += 1
        ok, msg = checker.verify(ledger, T0)
        assert not ok
        assert "Locked total" in msg

    def test_solvency_checked_when_custody_drops(self, checker, ledger):
        checker.capture(ledger)
        ledger.assets.transfer(ledger.custody_account, "xthief", 1_500_000)
        ok, msg = checker.verify(ledger, T0 + DAY)
        assert not ok
        assert "obligations" in msg

    def test_solvency_skipped_when_custody_grows(self, checker, ledger):
        ledger.assets.transfer(ledger.custody_account, "xthief", 1_004_000)
        checker.capture(ledger)
        ledger.assets.transfer(ALICE, ledger.custody_account, 1)
        # custody is short of obligations but grew during the call
        ok, _ = checker.verify(ledger, T0 + 100 * DAY)
        assert ok

    def test_collects_every_error(self, checker, ledger):
        checker.capture(ledger)
        ledger.total_locked = 0
        ledger.stakes[1].lock_seconds = 1
        ok, msg = checker.verify(ledger, T0)
        assert not ok
        assert msg.count("; ") == 1
