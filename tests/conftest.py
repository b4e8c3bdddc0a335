"""
Shared pytest fixtures for the LockStake test suite.
"""

import pytest

from lockstake_core.service import StakingService
from lockstake_core.staking import SECONDS_PER_DAY

T0 = 1_700_000_000
DAY = SECONDS_PER_DAY
TIER_90 = 90 * DAY
TIER_180 = 180 * DAY
TIER_270 = 270 * DAY
TIER_365 = 365 * DAY

ADMIN = "xadmin"
ALICE = "xalice"
BOB = "xbob"

STARTING_BALANCE = 1_000_000
REWARDS_POOL = 1_000_000


class FakeClock:
    """Settable clock; returns whole seconds."""

    def __init__(self, now: int = T0):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> int:
        self.now += seconds
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(clock):
    """Service with Alice and Bob funded and a funded reward pool."""
    svc = StakingService(ADMIN, clock=clock)
    svc.assets.mint(ALICE, STARTING_BALANCE)
    svc.assets.mint(BOB, STARTING_BALANCE)
    svc.assets.mint(svc.custody_account, REWARDS_POOL)
    return svc


@pytest.fixture
def approved(service):
    """Service where Alice and Bob have approved custody for their full balance."""
    service.approve(ALICE, STARTING_BALANCE)
    service.approve(BOB, STARTING_BALANCE)
    return service


@pytest.fixture
def unfunded(clock):
    """Service with an empty reward pool; Alice is funded and approved."""
    svc = StakingService(ADMIN, clock=clock)
    svc.assets.mint(ALICE, STARTING_BALANCE)
    svc.approve(ALICE, STARTING_BALANCE)
    return svc
