"""Tests for the fungible asset ledger."""

import pytest

from lockstake_core.asset_ledger import UINT256_MAX, AssetLedger, checked_uint
from lockstake_core.errors import (
    AmountOverflow,
    InsufficientAllowance,
    InsufficientFunds,
    InvalidAmount,
)
from lockstake_core.events import ZERO_ADDRESS


@pytest.fixture
def assets():
    ledger = AssetLedger()
    ledger.mint("xalice", 1_000)
    return ledger


class TestCheckedUint:
    def test_accepts_bounds(self):
        assert checked_uint(0) == 0
        assert checked_uint(UINT256_MAX) == UINT256_MAX

    @pytest.mark.parametrize("bad", [1.0, "5", None, True])
    def test_rejects_non_int(self, bad):
        with pytest.raises(InvalidAmount):
            checked_uint(bad)

    def test_rejects_negative(self):
        with pytest.raises(InvalidAmount, match="fee must be non-negative"):
            checked_uint(-1, "fee")

    def test_rejects_overflow(self):
        with pytest.raises(AmountOverflow):
            checked_uint(UINT256_MAX + 1)


class TestMint:
    def test_credits_and_supply(self, assets):
        assert assets.balance_of("xalice") == 1_000
        assert assets.total_supply == 1_000

    def test_mint_event_from_zero(self, assets):
        ev = assets.events.last("Transfer")
        assert ev.args == {"sender": ZERO_ADDRESS, "to": "xalice", "amount": 1_000}

    def test_supply_overflow(self, assets):
        with pytest.raises(AmountOverflow):
            assets.mint("xbob", UINT256_MAX)


class TestTransfer:
    def test_moves_balance(self, assets):
        assets.transfer("xalice", "xbob", 400)
        assert assets.balance_of("xalice") == 600
        assert assets.balance_of("xbob") == 400

    def test_insufficient(self, assets):
        with pytest.raises(InsufficientFunds):
            assets.transfer("xalice", "xbob", 1_001)
        assert assets.balance_of("xalice") == 1_000

    def test_unknown_account_zero(self, assets):
        assert assets.balance_of("xnobody") == 0

    def test_zero_transfer_allowed(self, assets):
        assets.transfer("xalice", "xbob", 0)
        assert assets.balance_of("xbob") == 0


class TestAllowance:
    def test_approve_sets(self, assets):
        assets.approve("xalice", "xspender", 300)
        assert assets.allowance("xalice", "xspender") == 300
        assert assets.events.last("Approval")["amount"] == 300

    def test_approve_overwrites(self, assets):
        assets.approve("xalice", "xspender", 300)
        assets.approve("xalice", "xspender", 10)
        assert assets.allowance("xalice", "xspender") == 10

    def test_transfer_from_consumes(self, assets):
        assets.approve("xalice", "xspender", 300)
        assets.transfer_from("xspender", "xalice", "xbob", 200)
        assert assets.allowance("xalice", "xspender") == 100
        assert assets.balance_of("xbob") == 200

    def test_transfer_from_without_allowance(self, assets):
        with pytest.raises(InsufficientAllowance):
            assets.transfer_from("xspender", "xalice", "xbob", 1)

    def test_transfer_from_over_balance(self, assets):
        assets.approve("xalice", "xspender", 5_000)
        with pytest.raises(InsufficientFunds) as exc:
            assets.transfer_from("xspender", "xalice", "xbob", 2_000)
        assert not isinstance(exc.value, InsufficientAllowance)
        assert assets.allowance("xalice", "xspender") == 5_000


class TestState:
    def test_export_load_is_independent_copy(self, assets):
        assets.approve("xalice", "xspender", 7)
        state = assets.export_state()
        assets.transfer("xalice", "xbob", 500)
        assets.load_state(state)
        assert assets.balance_of("xalice") == 1_000
        assert assets.balance_of("xbob") == 0
        assert assets.allowance("xalice", "xspender") == 7
