"""
REST / HTTP API server for LockStake.

Built on ``aiohttp``; every handler calls straight into the synchronous
``StakingService``.

Endpoints
---------
GET  /health                      Liveness + invariant audit
GET  /owner                       Administrator address
GET  /tiers                       Lock tiers and rates
GET  /pool                        Custody and reward totals
GET  /audit                       Full invariant report
GET  /balance/{address}           Asset balance
GET  /positions/{address}         Open positions held by an address
GET  /stakes/{handle}             Stake record
GET  /stakes/{handle}/rewards     Available rewards
GET  /events                      Event log (``?name=`` / ``?since=``)
POST /approve                     Allow custody to pull funds
POST /transfer                    Move asset units
POST /stake                       Open a position
POST /stakes/{handle}/rewards     Withdraw part of the rewards
POST /stakes/{handle}/withdraw    Withdraw principal + rewards (mature only)
POST /stakes/{handle}/uri         Attach metadata URI (once)
POST /stakes/{handle}/transfer    Hand the position to another address
POST /sudo/withdraw               Admin: force-close a position
POST /sudo/add                    Admin: raise a correction
POST /sudo/deduct                 Admin: lower a correction
POST /sudo/owner                  Admin: transfer administration

Authentication
--------------
POST bodies are signed envelopes::

    {"payload": {"action": "stake", "amount": 1000, "lock_seconds": 7776000,
                 "nonce": 17},
     "public_key": "04…", "signature": "30…"}

The caller is the address derived from ``public_key``.  ``action`` must
match the endpoint and ``nonce`` must exceed the caller's previous one,
so a captured request cannot be replayed or redirected.

Errors
------
``StakingError`` subclasses map to JSON ``{"error": code, "message": …}``
with 403 (``NotOwner`` / ``NotAdmin``), 404 (``UnknownHandle``) or 400.

Usage:
    api = APIServer(service, host="127.0.0.1", port=8080)
    await api.start()    # call inside existing event loop
    ...
    await api.stop()
"""

from __future__ import annotations

import json
import logging
import re
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from lockstake_core.crypto_utils import derive_address
from lockstake_core.errors import NotAdmin, NotOwner, StakingError, UnknownHandle
from lockstake_core.wallet import verify_payload

if TYPE_CHECKING:
    from lockstake_core.config import APIConfig
    from lockstake_core.service import StakingService
    from lockstake_core.storage import StakeStore

logger = logging.getLogger("lockstake_api")

_INT_RE = re.compile(r"-?[0-9]+")


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

def _safe_int(value: Any, name: str = "value") -> int:
    """Accept an int or an ASCII decimal string; reject floats and bools."""
    if isinstance(value, bool) or isinstance(value, float):
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    if isinstance(value, int):
        return value
    if isinstance(value, str) and _INT_RE.fullmatch(value.strip()):
        return int(value.strip())
    raise web.HTTPBadRequest(text=f"{name} must be an integer")


def _safe_str(value: Any, name: str, max_len: int = 2048) -> str:
    if not isinstance(value, str) or not value:
        raise web.HTTPBadRequest(text=f"{name} required")
    if len(value) > max_len:
        raise web.HTTPBadRequest(text=f"{name} too long")
    return value


def _handle_param(request: web.Request) -> int:
    return _safe_int(request.match_info["handle"], "handle")


def _json_dumps(obj: Any) -> str:
    """JSON serialiser that handles non-standard types."""
    return json.dumps(obj, default=str)


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Simple per-IP token-bucket rate limiter."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm  # 0 = unlimited
        # ip -> (tokens, last_refill_timestamp)
        self._buckets: dict[str, list[float]] = defaultdict(lambda: [float(rpm), time.monotonic()])

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        elapsed = now - bucket[1]
        bucket[0] = min(float(self._rpm), bucket[0] + elapsed * (self._rpm / 60.0))
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

def _make_rate_limit_middleware(bucket: _TokenBucket):
    """aiohttp middleware that enforces per-IP rate limits."""

    @web.middleware
    async def rate_limit_middleware(request: web.Request, handler):
        ip = request.remote or "unknown"
        if not bucket.allow(ip):
            raise web.HTTPTooManyRequests(
                text="Rate limit exceeded. Try again later.",
                headers={"Retry-After": "5"},
            )
        return await handler(request)

    return rate_limit_middleware


def _make_cors_middleware(origins: list[str]):
    """aiohttp middleware that adds CORS headers for explicitly listed origins."""

    allowed = set(origins) if origins else set()
    allowed.discard("*")

    @web.middleware
    async def cors_middleware(request: web.Request, handler):
        origin = request.headers.get("Origin", "")
        if request.method == "OPTIONS":
            resp = web.Response(status=204)
        else:
            resp = await handler(request)

        if origin in allowed:
            resp.headers["Access-Control-Allow-Origin"] = origin
            resp.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type"
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


def _error_status(exc: StakingError) -> type[web.HTTPError]:
    if isinstance(exc, (NotOwner, NotAdmin)):
        return web.HTTPForbidden
    if isinstance(exc, UnknownHandle):
        return web.HTTPNotFound
    return web.HTTPBadRequest


@web.middleware
async def staking_error_middleware(request: web.Request, handler):
    """Translate ledger errors into JSON HTTP errors."""
    try:
        return await handler(request)
    except StakingError as exc:
        raise _error_status(exc)(
            text=_json_dumps(exc.to_dict()),
            content_type="application/json",
        )


class APIServer:
    """Thin aiohttp wrapper around a ``StakingService``."""

    def __init__(
        self,
        service: StakingService,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
        store: StakeStore | None = None,
    ):
        self.service = service
        self.host = host
        self.port = port
        self.store = store
        self._api_config = api_config
        self._nonces: dict[str, int] = {}
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 65_536

        if self._api_config is not None:
            cfg = self._api_config
            max_body = cfg.max_body_bytes
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
            if cfg.cors_origins:
                middlewares.append(_make_cors_middleware(cfg.cors_origins))

        middlewares.append(staking_error_middleware)
        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        app = self.build_app()
        self._runner = web.AppRunner(app)
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"API listening on http://{self.host}:{self.port}")

    async def stop(self) -> None:
        if self._runner:
            await self._runner.cleanup()

    # ── routes ───────────────────────────────────────────────────

    def _register_routes(self, app: web.Application) -> None:
        app.router.add_get("/health", self._health)
        app.router.add_get("/owner", self._owner)
        app.router.add_get("/tiers", self._tiers)
        app.router.add_get("/pool", self._pool)
        app.router.add_get("/audit", self._audit)
        app.router.add_get("/balance/{address}", self._balance)
        app.router.add_get("/positions/{address}", self._positions)
        app.router.add_get("/stakes/{handle}", self._stake_info)
        app.router.add_get("/stakes/{handle}/rewards", self._rewards)
        app.router.add_get("/events", self._events)

        app.router.add_post("/approve", self._approve)
        app.router.add_post("/transfer", self._transfer)
        app.router.add_post("/stake", self._stake)
        app.router.add_post("/stakes/{handle}/rewards", self._withdraw_rewards)
        app.router.add_post("/stakes/{handle}/withdraw", self._withdraw)
        app.router.add_post("/stakes/{handle}/uri", self._set_uri)
        app.router.add_post("/stakes/{handle}/transfer", self._transfer_position)

        app.router.add_post("/sudo/withdraw", self._sudo_withdraw)
        app.router.add_post("/sudo/add", self._sudo_add)
        app.router.add_post("/sudo/deduct", self._sudo_deduct)
        app.router.add_post("/sudo/owner", self._sudo_owner)

    # ── authentication ───────────────────────────────────────────

    async def _authenticate(self, request: web.Request, action: str) -> tuple[str, dict]:
        """Verify a signed envelope.  Returns ``(caller_address, payload)``."""
        try:
            body = await request.json()
        except ValueError as exc:
            raise web.HTTPBadRequest(text="Invalid JSON body") from exc
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(text="Invalid JSON body")

        payload = body.get("payload")
        if not isinstance(payload, dict):
            raise web.HTTPBadRequest(text="payload object required")
        try:
            public_key = bytes.fromhex(_safe_str(body.get("public_key"), "public_key"))
            signature = bytes.fromhex(_safe_str(body.get("signature"), "signature"))
        except ValueError as exc:
            raise web.HTTPBadRequest(text="public_key and signature must be hex") from exc

        if not verify_payload(payload, public_key, signature):
            raise web.HTTPUnauthorized(text="Invalid signature")
        if payload.get("action") != action:
            raise web.HTTPBadRequest(text=f"payload action must be {action!r}")

        caller = derive_address(public_key)
        nonce = _safe_int(payload.get("nonce"), "nonce")
        if nonce <= self._nonces.get(caller, 0):
            raise web.HTTPConflict(text="Stale nonce")
        self._nonces[caller] = nonce
        return caller, payload

    def _persist(self) -> None:
        if self.store is not None:
            self.store.snapshot_service(self.service)

    # ── read-only handlers ───────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        audit = self.service.audit()
        summary = self.service.pool_summary()
        return web.json_response({
            "ok": audit["ok"],
            "open_stakes": summary["open_stakes"],
            "custody_balance": summary["custody_balance"],
            "checks": {"invariants": "ok" if audit["ok"] else "degraded"},
        }, status=200 if audit["ok"] else 503, dumps=_json_dumps)

    async def _owner(self, _request: web.Request) -> web.Response:
        return web.json_response({"owner": self.service.owner()})

    async def _tiers(self, _request: web.Request) -> web.Response:
        return web.json_response({"tiers": self.service.tier_info()})

    async def _pool(self, _request: web.Request) -> web.Response:
        return web.json_response(self.service.pool_summary(), dumps=_json_dumps)

    async def _audit(self, _request: web.Request) -> web.Response:
        return web.json_response(self.service.audit())

    async def _balance(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        return web.json_response({
            "address": address,
            "balance": self.service.balance_of(address),
            "symbol": self.service.assets.symbol,
        }, dumps=_json_dumps)

    async def _positions(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        stakes = [
            self.service.stake_info(s.handle) for s in self.service.stakes_of(address)
        ]
        return web.json_response({"address": address, "stakes": stakes},
                                 dumps=_json_dumps)

    async def _stake_info(self, request: web.Request) -> web.Response:
        info = self.service.stake_info(_handle_param(request))
        return web.json_response(info, dumps=_json_dumps)

    async def _rewards(self, request: web.Request) -> web.Response:
        handle = _handle_param(request)
        return web.json_response({
            "handle": handle,
            "available_rewards": self.service.available_rewards(handle),
        }, dumps=_json_dumps)

    async def _events(self, request: web.Request) -> web.Response:
        name = request.query.get("name", "")
        since = _safe_int(request.query.get("since", "0"), "since")
        events = [
            e.to_dict() for e in self.service.events.events[max(since, 0):]
            if not name or e.name == name
        ]
        return web.json_response({"events": events}, dumps=_json_dumps)

    # ── asset handlers ───────────────────────────────────────────

    async def _approve(self, request: web.Request) -> web.Response:
        caller, p = await self._authenticate(request, "approve")
        amount = _safe_int(p.get("amount"), "amount")
        spender = p.get("spender") or None
        self.service.approve(caller, amount, spender=spender)
        self._persist()
        return web.json_response({"status": "approved", "owner": caller,
                                  "amount": amount}, dumps=_json_dumps)

    async def _transfer(self, request: web.Request) -> web.Response:
        caller, p = await self._authenticate(request, "transfer")
        to = _safe_str(p.get("to"), "to", max_len=128)
        amount = _safe_int(p.get("amount"), "amount")
        self.service.transfer(caller, to, amount)
        self._persist()
        return web.json_response({"status": "transferred", "to": to,
                                  "amount": amount}, dumps=_json_dumps)

    # ── staking handlers ─────────────────────────────────────────

    async def _stake(self, request: web.Request) -> web.Response:
        caller, p = await self._authenticate(request, "stake")
        amount = _safe_int(p.get("amount"), "amount")
        lock_seconds = _safe_int(p.get("lock_seconds"), "lock_seconds")
        handle = self.service.stake(caller, amount, lock_seconds)
        self._persist()
        return web.json_response({
            "status": "staked",
            "handle": handle,
            "amount": amount,
            "lock_seconds": lock_seconds,
        }, dumps=_json_dumps)

    async def _withdraw_rewards(self, request: web.Request) -> web.Response:
        caller, p = await self._authenticate(request, "withdraw_rewards")
        handle = _handle_param(request)
        amount = _safe_int(p.get("amount"), "amount")
        paid = self.service.withdraw_rewards(caller, handle, amount)
        self._persist()
        return web.json_response({"status": "rewards_withdrawn", "handle": handle,
                                  "amount": paid}, dumps=_json_dumps)

    async def _withdraw(self, request: web.Request) -> web.Response:
        caller, _p = await self._authenticate(request, "withdraw")
        handle = _handle_param(request)
        paid = self.service.withdraw(caller, handle)
        self._persist()
        return web.json_response({"status": "withdrawn", "handle": handle,
                                  "total_paid": paid}, dumps=_json_dumps)

    async def _set_uri(self, request: web.Request) -> web.Response:
        caller, p = await self._authenticate(request, "set_uri")
        handle = _handle_param(request)
        uri = _safe_str(p.get("uri"), "uri")
        self.service.set_uri(caller, handle, uri)
        self._persist()
        return web.json_response({"status": "uri_set", "handle": handle, "uri": uri})

    async def _transfer_position(self, request: web.Request) -> web.Response:
        caller, p = await self._authenticate(request, "transfer_position")
        handle = _handle_param(request)
        to = _safe_str(p.get("to"), "to", max_len=128)
        self.service.transfer_position(caller, to, handle)
        self._persist()
        return web.json_response({"status": "position_transferred",
                                  "handle": handle, "to": to})

    # ── administrative handlers ──────────────────────────────────

    async def _sudo_withdraw(self, request: web.Request) -> web.Response:
        caller, p = await self._authenticate(request, "sudo_withdraw")
        handle = _safe_int(p.get("handle"), "handle")
        recipient = p.get("recipient") or None
        settle = p.get("settle_rewards", True)
        if not isinstance(settle, bool):
            raise web.HTTPBadRequest(text="settle_rewards must be a boolean")
        paid = self.service.sudo_withdraw_token(
            caller, handle, recipient=recipient, settle_rewards=settle,
        )
        self._persist()
        return web.json_response({"status": "force_closed", "handle": handle,
                                  "total_paid": paid}, dumps=_json_dumps)

    async def _sudo_add(self, request: web.Request) -> web.Response:
        caller, p = await self._authenticate(request, "sudo_add")
        handle = _safe_int(p.get("handle"), "handle")
        delta = _safe_int(p.get("delta"), "delta")
        correction = self.service.sudo_add_token(caller, handle, delta)
        self._persist()
        return web.json_response({"handle": handle, "correction": correction},
                                 dumps=_json_dumps)

    async def _sudo_deduct(self, request: web.Request) -> web.Response:
        caller, p = await self._authenticate(request, "sudo_deduct")
        handle = _safe_int(p.get("handle"), "handle")
        delta = _safe_int(p.get("delta"), "delta")
        correction = self.service.sudo_deduct_token(caller, handle, delta)
        self._persist()
        return web.json_response({"handle": handle, "correction": correction},
                                 dumps=_json_dumps)

    async def _sudo_owner(self, request: web.Request) -> web.Response:
        caller, p = await self._authenticate(request, "transfer_ownership")
        new_admin = _safe_str(p.get("new_admin"), "new_admin", max_len=128)
        self.service.transfer_ownership(caller, new_admin)
        self._persist()
        return web.json_response({"owner": self.service.owner()})
