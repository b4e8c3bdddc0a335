"""
Tests for the REST API: signed envelopes, routing and error mapping.

Covers:
  - Read-only endpoints (health, owner, tiers, pool, balances, events)
  - Full approve → stake → rewards → withdraw flow over HTTP
  - Envelope authentication: bad signatures, replayed nonces, action binding
  - StakingError → HTTP status / JSON body mapping
  - Persistence after state-changing calls
  - Rate limiting and CORS middleware
"""

import pytest
from aiohttp import web
from aiohttp.test_utils import TestClient, TestServer

from conftest import DAY, TIER_90, FakeClock
from lockstake_core.api import APIServer, _safe_int, _TokenBucket
from lockstake_core.config import APIConfig
from lockstake_core.service import StakingService
from lockstake_core.storage import StakeStore
from lockstake_core.wallet import Wallet

STARTING_BALANCE = 1_000_000


class _Env:
    """A service with funded wallets behind an API server."""

    def __init__(self, api_config=None, store=None):
        self.clock = FakeClock()
        self.admin = Wallet.create()
        self.alice = Wallet.create()
        self.bob = Wallet.create()
        self.service = StakingService(self.admin.address, clock=self.clock)
        self.service.assets.mint(self.alice.address, STARTING_BALANCE)
        self.service.assets.mint(self.bob.address, STARTING_BALANCE)
        self.service.assets.mint(self.service.custody_account, STARTING_BALANCE)
        self.api = APIServer(self.service, api_config=api_config, store=store)
        self.client = TestClient(TestServer(self.api.build_app()))

    async def post(self, path, wallet, **fields):
        return await self.client.post(path, json=wallet.signed_request(**fields))

    async def stake(self, wallet, amount=1000, lock_seconds=TIER_90):
        resp = await self.post("/approve", wallet, action="approve", amount=amount)
        assert resp.status == 200
        resp = await self.post("/stake", wallet, action="stake",
                               amount=amount, lock_seconds=lock_seconds)
        assert resp.status == 200
        return (await resp.json())["handle"]


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

class TestSafeInt:
    def test_accepts_int_and_digit_string(self):
        assert _safe_int(5) == 5
        assert _safe_int(" 42 ") == 42
        assert _safe_int(str(2 ** 200)) == 2 ** 200

    @pytest.mark.parametrize("bad", [1.5, True, "1.5", "abc", None, [1], "²", "٣", "--5", "", "1_000"])
    def test_rejects(self, bad):
        with pytest.raises(web.HTTPBadRequest):
            _safe_int(bad)


# ═══════════════════════════════════════════════════════════════════
#  Read-only endpoints
# ═══════════════════════════════════════════════════════════════════

class TestReadEndpoints:
    @pytest.mark.asyncio
    async def test_health(self):
        env = _Env()
        async with env.client:
            resp = await env.client.get("/health")
            assert resp.status == 200
            data = await resp.json()
            assert data["ok"] is True
            assert data["open_stakes"] == 0
            assert data["custody_balance"] == STARTING_BALANCE

    @pytest.mark.asyncio
    async def test_owner(self):
        env = _Env()
        async with env.client:
            data = await (await env.client.get("/owner")).json()
            assert data["owner"] == env.admin.address

    @pytest.mark.asyncio
    async def test_tiers(self):
        env = _Env()
        async with env.client:
            data = await (await env.client.get("/tiers")).json()
            assert [t["lock_days"] for t in data["tiers"]] == [90, 180, 270, 365]
            assert data["tiers"][0]["rate_bps"] == 450

    @pytest.mark.asyncio
    async def test_balance(self):
        env = _Env()
        async with env.client:
            data = await (await env.client.get(f"/balance/{env.alice.address}")).json()
            assert data["balance"] == STARTING_BALANCE

    @pytest.mark.asyncio
    async def test_unknown_handle_is_404(self):
        env = _Env()
        async with env.client:
            resp = await env.client.get("/stakes/99")
            assert resp.status == 404
            assert (await resp.json())["error"] == "UnknownHandle"

    @pytest.mark.asyncio
    async def test_non_numeric_handle_is_400(self):
        env = _Env()
        async with env.client:
            resp = await env.client.get("/stakes/abc")
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_unicode_digit_handle_is_400(self):
        env = _Env()
        async with env.client:
            assert (await env.client.get("/stakes/²")).status == 400
            resp = await env.client.get("/events", params={"since": "²"})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_audit(self):
        env = _Env()
        async with env.client:
            data = await (await env.client.get("/audit")).json()
            assert data == {"ok": True, "errors": []}


# ═══════════════════════════════════════════════════════════════════
#  Staking flow
# ═══════════════════════════════════════════════════════════════════

class TestStakingFlow:
    @pytest.mark.asyncio
    async def test_full_lifecycle(self):
        env = _Env()
        async with env.client:
            handle = await env.stake(env.alice)
            assert handle == 1

            info = await (await env.client.get(f"/stakes/{handle}")).json()
            assert info["amount"] == 1000
            assert info["owner"] == env.alice.address
            assert info["status"] == "Active"

            positions = await (await env.client.get(
                f"/positions/{env.alice.address}")).json()
            assert [s["handle"] for s in positions["stakes"]] == [handle]

            env.clock.advance(TIER_90)
            rewards = await (await env.client.get(f"/stakes/{handle}/rewards")).json()
            assert rewards["available_rewards"] == 11

            resp = await env.post(f"/stakes/{handle}/rewards", env.alice,
                                  action="withdraw_rewards", amount=4)
            assert resp.status == 200
            assert (await resp.json())["amount"] == 4

            resp = await env.post(f"/stakes/{handle}/withdraw", env.alice,
                                  action="withdraw")
            assert resp.status == 200
            assert (await resp.json())["total_paid"] == 1007

            balance = await (await env.client.get(
                f"/balance/{env.alice.address}")).json()
            assert balance["balance"] == STARTING_BALANCE + 11

    @pytest.mark.asyncio
    async def test_withdraw_before_maturity(self):
        env = _Env()
        async with env.client:
            handle = await env.stake(env.alice)
            env.clock.advance(DAY)
            resp = await env.post(f"/stakes/{handle}/withdraw", env.alice,
                                  action="withdraw")
            assert resp.status == 400
            assert (await resp.json())["error"] == "NotMatured"

    @pytest.mark.asyncio
    async def test_invalid_duration(self):
        env = _Env()
        async with env.client:
            await env.post("/approve", env.alice, action="approve", amount=1000)
            resp = await env.post("/stake", env.alice, action="stake",
                                  amount=1000, lock_seconds=12345)
            assert resp.status == 400
            assert (await resp.json())["error"] == "InvalidDuration"

    @pytest.mark.asyncio
    async def test_float_amount_rejected(self):
        env = _Env()
        async with env.client:
            resp = await env.post("/stake", env.alice, action="stake",
                                  amount=1.5, lock_seconds=TIER_90)
            assert resp.status == 400
            assert env.service.ledger.stakes == {}

    @pytest.mark.asyncio
    async def test_uri_once(self):
        env = _Env()
        async with env.client:
            handle = await env.stake(env.alice)
            path = f"/stakes/{handle}/uri"
            resp = await env.post(path, env.alice, action="set_uri", uri="ipfs://a")
            assert resp.status == 200
            resp = await env.post(path, env.alice, action="set_uri", uri="ipfs://b")
            assert resp.status == 400
            assert (await resp.json())["error"] == "URIAlreadySet"

    @pytest.mark.asyncio
    async def test_position_transfer(self):
        env = _Env()
        async with env.client:
            handle = await env.stake(env.alice)
            resp = await env.post(f"/stakes/{handle}/transfer", env.alice,
                                  action="transfer_position", to=env.bob.address)
            assert resp.status == 200
            info = await (await env.client.get(f"/stakes/{handle}")).json()
            assert info["owner"] == env.bob.address

    @pytest.mark.asyncio
    async def test_other_holder_forbidden(self):
        env = _Env()
        async with env.client:
            handle = await env.stake(env.alice)
            env.clock.advance(TIER_90)
            resp = await env.post(f"/stakes/{handle}/withdraw", env.bob,
                                  action="withdraw")
            assert resp.status == 403
            assert (await resp.json())["error"] == "NotOwner"

    @pytest.mark.asyncio
    async def test_asset_transfer(self):
        env = _Env()
        async with env.client:
            resp = await env.post("/transfer", env.alice, action="transfer",
                                  to=env.bob.address, amount=250)
            assert resp.status == 200
            assert env.service.balance_of(env.bob.address) == STARTING_BALANCE + 250

    @pytest.mark.asyncio
    async def test_events_filter(self):
        env = _Env()
        async with env.client:
            await env.stake(env.alice)
            data = await (await env.client.get("/events?name=StakeCreated")).json()
            assert len(data["events"]) == 1
            assert data["events"][0]["args"]["handle"] == 1


# ═══════════════════════════════════════════════════════════════════
#  Administration
# ═══════════════════════════════════════════════════════════════════

class TestAdminEndpoints:
    @pytest.mark.asyncio
    async def test_non_admin_forbidden(self):
        env = _Env()
        async with env.client:
            handle = await env.stake(env.alice)
            resp = await env.post("/sudo/add", env.alice, action="sudo_add",
                                  handle=handle, delta=5)
            assert resp.status == 403
            assert (await resp.json())["error"] == "NotAdmin"

    @pytest.mark.asyncio
    async def test_corrections(self):
        env = _Env()
        async with env.client:
            handle = await env.stake(env.alice)
            resp = await env.post("/sudo/add", env.admin, action="sudo_add",
                                  handle=handle, delta=500)
            assert (await resp.json())["correction"] == 500
            resp = await env.post("/sudo/deduct", env.admin, action="sudo_deduct",
                                  handle=handle, delta=200)
            assert (await resp.json())["correction"] == 300

    @pytest.mark.asyncio
    async def test_force_close(self):
        env = _Env()
        async with env.client:
            handle = await env.stake(env.alice)
            resp = await env.post("/sudo/withdraw", env.admin, action="sudo_withdraw",
                                  handle=handle, settle_rewards=False)
            assert resp.status == 200
            assert (await resp.json())["total_paid"] == 1000
            assert env.service.balance_of(env.alice.address) == STARTING_BALANCE

    @pytest.mark.asyncio
    async def test_force_close_after_deduct(self):
        env = _Env()
        async with env.client:
            handle = await env.stake(env.alice)
            resp = await env.post("/sudo/deduct", env.admin, action="sudo_deduct",
                                  handle=handle, delta=5)
            assert (await resp.json())["correction"] == -5
            resp = await env.post("/sudo/withdraw", env.admin, action="sudo_withdraw",
                                  handle=handle)
            assert resp.status == 200
            info = await (await env.client.get(f"/stakes/{handle}")).json()
            assert info["status"] == "Closed"
            assert info["correction"] == 0

    @pytest.mark.asyncio
    async def test_settle_rewards_must_be_bool(self):
        env = _Env()
        async with env.client:
            handle = await env.stake(env.alice)
            resp = await env.post("/sudo/withdraw", env.admin, action="sudo_withdraw",
                                  handle=handle, settle_rewards="no")
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_ownership_transfer(self):
        env = _Env()
        async with env.client:
            resp = await env.post("/sudo/owner", env.admin,
                                  action="transfer_ownership",
                                  new_admin=env.bob.address)
            assert (await resp.json())["owner"] == env.bob.address
            resp = await env.post("/sudo/owner", env.admin,
                                  action="transfer_ownership",
                                  new_admin=env.admin.address)
            assert resp.status == 403


# ═══════════════════════════════════════════════════════════════════
#  Envelope authentication
# ═══════════════════════════════════════════════════════════════════

class TestAuthentication:
    @pytest.mark.asyncio
    async def test_tampered_payload(self):
        env = _Env()
        async with env.client:
            envelope = env.alice.signed_request(action="approve", amount=10)
            envelope["payload"]["amount"] = 10_000
            resp = await env.client.post("/approve", json=envelope)
            assert resp.status == 401

    @pytest.mark.asyncio
    async def test_replayed_nonce(self):
        env = _Env()
        async with env.client:
            envelope = env.alice.signed_request(action="approve", amount=10)
            assert (await env.client.post("/approve", json=envelope)).status == 200
            assert (await env.client.post("/approve", json=envelope)).status == 409

    @pytest.mark.asyncio
    async def test_nonces_tracked_per_caller(self):
        env = _Env()
        async with env.client:
            a = env.alice.signed_request(action="approve", amount=1, nonce=5)
            b = env.bob.signed_request(action="approve", amount=1, nonce=5)
            assert (await env.client.post("/approve", json=a)).status == 200
            assert (await env.client.post("/approve", json=b)).status == 200

    @pytest.mark.asyncio
    async def test_action_bound_to_route(self):
        env = _Env()
        async with env.client:
            envelope = env.alice.signed_request(action="approve", amount=10)
            resp = await env.client.post("/transfer", json=envelope)
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_missing_signature(self):
        env = _Env()
        async with env.client:
            envelope = env.alice.signed_request(action="approve", amount=10)
            del envelope["signature"]
            assert (await env.client.post("/approve", json=envelope)).status == 400

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        env = _Env()
        async with env.client:
            resp = await env.client.post("/approve", data=b"not json",
                                         headers={"Content-Type": "application/json"})
            assert resp.status == 400

    @pytest.mark.asyncio
    async def test_failed_call_changes_nothing(self):
        env = _Env()
        async with env.client:
            before = env.service.export_state()
            resp = await env.post("/stake", env.alice, action="stake",
                                  amount=1000, lock_seconds=TIER_90)
            assert resp.status == 400
            assert (await resp.json())["error"] == "InsufficientAllowance"
            assert env.service.export_state() == before


# ═══════════════════════════════════════════════════════════════════
#  Persistence
# ═══════════════════════════════════════════════════════════════════

class TestPersistence:
    @pytest.mark.asyncio
    async def test_snapshot_after_write(self, tmp_path):
        store = StakeStore(str(tmp_path / "api.db"))
        env = _Env(store=store)
        try:
            async with env.client:
                handle = await env.stake(env.alice)
            rows = store.load_stakes()
            assert [r["handle"] for r in rows] == [handle]
            assert store.load_balances()[env.alice.address] == STARTING_BALANCE - 1000
        finally:
            store.close()


# ═══════════════════════════════════════════════════════════════════
#  Middleware
# ═══════════════════════════════════════════════════════════════════

class TestTokenBucket:
    def test_unlimited_always_allows(self):
        bucket = _TokenBucket(0)
        for _ in range(500):
            assert bucket.allow("1.2.3.4")

    def test_allows_up_to_limit(self):
        bucket = _TokenBucket(3)
        for _ in range(3):
            assert bucket.allow("1.2.3.4")
        assert not bucket.allow("1.2.3.4")
        assert bucket.allow("5.6.7.8")

    def test_refill(self):
        bucket = _TokenBucket(60)
        for _ in range(60):
            bucket.allow("x")
        assert not bucket.allow("x")
        bucket._buckets["x"][1] -= 2.0
        assert bucket.allow("x")


class TestMiddleware:
    @pytest.mark.asyncio
    async def test_rate_limited(self):
        env = _Env(api_config=APIConfig(rate_limit_rpm=2))
        async with env.client:
            assert (await env.client.get("/owner")).status == 200
            assert (await env.client.get("/owner")).status == 200
            resp = await env.client.get("/owner")
            assert resp.status == 429
            assert resp.headers["Retry-After"] == "5"

    @pytest.mark.asyncio
    async def test_cors_allowed_origin(self):
        cfg = APIConfig(rate_limit_rpm=0, cors_origins=["https://app.example"])
        env = _Env(api_config=cfg)
        async with env.client:
            resp = await env.client.get("/owner", headers={"Origin": "https://app.example"})
            assert resp.headers["Access-Control-Allow-Origin"] == "https://app.example"
            resp = await env.client.get("/owner", headers={"Origin": "https://evil.example"})
            assert "Access-Control-Allow-Origin" not in resp.headers

    @pytest.mark.asyncio
    async def test_body_size_limit(self):
        env = _Env(api_config=APIConfig(rate_limit_rpm=0, max_body_bytes=1024))
        async with env.client:
            envelope = env.alice.signed_request(action="set_uri", uri="x" * 4096)
            resp = await env.client.post("/stakes/1/uri", json=envelope)
            assert resp.status == 413
