"""
REST / HTTP API server for DeedFlow nodes.

Built on ``aiohttp``.

Endpoints
---------
GET  /health                        Liveness + store check
GET  /status                        Node & escrow summary
GET  /parties                       Escrow, registry, seller, inspector, lender
GET  /listings                      Active listings
GET  /listing/{token_id}            One listing (any status)
GET  /listing/{token_id}/events     Event log for one token
GET  /events                        Full event log
GET  /balance                       Escrow holder balance
GET  /balance/{address}             Balance of any address
GET  /deed/{token_id}               Deed owner / URI / approval
GET  /account/{address}/deeds       Token ids owned by an address
GET  /nonce/{address}                Last request nonce accepted for an address
POST /tx/mint                       Mint a deed to the caller
POST /tx/approve_deed               Approve a spender for a deed
POST /tx/list                       List a deed (seller)
POST /tx/deposit                    Deposit earnest (buyer)
POST /tx/fund                       Fund a listing (lender)
POST /tx/inspect                    Set inspection result (inspector)
POST /tx/approve                    Approve the sale (buyer/seller/lender)
POST /tx/finalize                   Finalize the sale (seller)
POST /tx/cancel                     Cancel the sale (seller/buyer)

Callers
-------
Every POST body names its caller in ``account``.  With
``require_signatures`` on, the body must also carry ``public_key`` and
``signature`` (see :mod:`deedflow_core.signing`) and a ``nonce`` above
the last one accepted for that account; a reused nonce is rejected with 409.

Amounts are integers in base units (JSON numbers or digit strings).

Security
--------
- API-key authentication on POST endpoints via ``X-API-Key`` header.
- Per-IP token-bucket rate limiter (configurable RPM).
- CORS middleware (explicit origins only).
- Request body size cap (``max_body_bytes``).

Usage:
    api = APIServer(node, host="127.0.0.1", port=8080, api_config=cfg.api)
    await api.start()
    ...
    await api.stop()
"""

from __future__ import annotations

import hmac
import json
import logging
import time
from collections import defaultdict
from typing import TYPE_CHECKING, Any

from aiohttp import web

from deedflow_core.errors import (
    AlreadyListed,
    ApprovalMissing,
    AssetNotApproved,
    AssetNotOwned,
    EscrowError,
    InspectionNotPassed,
    NotListed,
    StaleNonce,
    Unauthorized,
    UnknownToken,
)
from deedflow_core.signing import address_from_public_key, verify_payload

if TYPE_CHECKING:
    from deedflow_core.config import APIConfig
    from deedflow_core.node import EscrowNode

logger = logging.getLogger("deedflow_api")

_ERROR_STATUS: list[tuple[type[EscrowError], int]] = [
    (Unauthorized, 403),
    (NotListed, 404),
    (UnknownToken, 404),
    (AlreadyListed, 409),
    (InspectionNotPassed, 409),
    (ApprovalMissing, 409),
    (AssetNotOwned, 409),
    (AssetNotApproved, 409),
    (StaleNonce, 409),
]


# ═══════════════════════════════════════════════════════════════════
#  Input helpers
# ═══════════════════════════════════════════════════════════════════

# Nonces are stored as SQLite INTEGER.
MAX_NONCE = 2 ** 63 - 1


def _parse_whole(value: Any) -> int | None:
    """Return *value* as an int if it is a JSON integer or an ASCII digit string."""
    if isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        text = value.strip()
        if text.isascii() and text.isdigit():
            return int(text)
    return None


def _safe_int(value: Any, name: str = "value") -> int:
    """Convert *value* to int, rejecting bools, floats and non-digit strings."""
    parsed = _parse_whole(value)
    if parsed is None:
        raise web.HTTPBadRequest(text=f"{name} must be an integer")
    return parsed


def _safe_units(value: Any, name: str = "amount") -> int:
    """Parse a non-negative base-unit amount from an int or a digit string."""
    units = _parse_whole(value)
    if units is None:
        raise web.HTTPBadRequest(text=f"{name} must be an integer amount in base units")
    if units < 0:
        raise web.HTTPBadRequest(text=f"{name} must not be negative")
    return units


def _status_for(exc: EscrowError) -> int:
    for cls, status in _ERROR_STATUS:
        if isinstance(exc, cls):
            return status
    return 400


# ═══════════════════════════════════════════════════════════════════
#  Rate Limiter (per-IP token bucket)
# ═══════════════════════════════════════════════════════════════════

class _TokenBucket:
    """Per-IP token bucket; ``rpm <= 0`` disables limiting."""

    __slots__ = ("_buckets", "_rpm")

    def __init__(self, rpm: int):
        self._rpm = rpm
        # ip -> [tokens, last_refill_timestamp]
        self._buckets: dict[str, list[float]] = defaultdict(
            lambda: [float(rpm), time.monotonic()]
        )

    def allow(self, ip: str) -> bool:
        if self._rpm <= 0:
            return True
        bucket = self._buckets[ip]
        now = time.monotonic()
        bucket[0] = min(float(self._rpm), bucket[0] + (now - bucket[1]) * self._rpm / 60.0)
        bucket[1] = now
        if bucket[0] >= 1.0:
            bucket[0] -= 1.0
            return True
        return False


# ═══════════════════════════════════════════════════════════════════
#  Middleware factories
# ═══════════════════════════════════════════════════════════════════

@web.middleware
async def escrow_error_middleware(request: web.Request, handler):
    """Turn ledger errors into JSON error responses."""
    try:
        return await handler(request)
    except EscrowError as exc:
        body: dict[str, Any] = {"error": exc.code, "message": str(exc)}
        if isinstance(exc, ApprovalMissing):
            body["missing"] = exc.missing
        return web.json_response(body, status=_status_for(exc))


def _make_rate_limit_middleware(bucket: _TokenBucket):

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


def _make_api_key_middleware(api_key: str):
    """Require ``X-API-Key`` on POST requests (timing-safe compare)."""

    @web.middleware
    async def api_key_middleware(request: web.Request, handler):
        if request.method == "POST":
            key = request.headers.get("X-API-Key", "")
            if not hmac.compare_digest(key, api_key):
                raise web.HTTPUnauthorized(text="Invalid or missing API key")
        return await handler(request)

    return api_key_middleware


def _make_cors_middleware(origins: list[str]):
    """Add CORS headers for the listed origins.  ``*`` is ignored."""

    allowed = set(origins)
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
            resp.headers["Access-Control-Allow-Headers"] = "Content-Type, X-API-Key"
            resp.headers["Access-Control-Max-Age"] = "3600"
        return resp

    return cors_middleware


class APIServer:
    """Thin aiohttp wrapper around an EscrowNode."""

    def __init__(
        self,
        node: EscrowNode,
        host: str = "127.0.0.1",
        port: int = 8080,
        *,
        api_config: APIConfig | None = None,
    ):
        self.node = node
        self.host = host
        self.port = port
        self._api_config = api_config
        self.require_signatures = api_config.require_signatures if api_config else True
        self._app: web.Application | None = None
        self._runner: web.AppRunner | None = None

    # ── lifecycle ────────────────────────────────────────────────

    def build_app(self) -> web.Application:
        middlewares: list = []
        max_body = 65_536
        cfg = self._api_config
        if cfg is not None:
            max_body = cfg.max_body_bytes
            if cfg.rate_limit_rpm > 0:
                middlewares.append(_make_rate_limit_middleware(_TokenBucket(cfg.rate_limit_rpm)))
            if cfg.cors_origins:
                middlewares.append(_make_cors_middleware(cfg.cors_origins))
            if cfg.api_key:
                middlewares.append(_make_api_key_middleware(cfg.api_key))
        middlewares.append(escrow_error_middleware)

        app = web.Application(middlewares=middlewares, client_max_size=max_body)
        self._register_routes(app)
        self._app = app
        return app

    async def start(self) -> None:
        self._runner = web.AppRunner(self.build_app())
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
        app.router.add_get("/status", self._status)
        app.router.add_get("/parties", self._parties)
        app.router.add_get("/listings", self._listings)
        app.router.add_get("/listing/{token_id}", self._listing)
        app.router.add_get("/listing/{token_id}/events", self._listing_events)
        app.router.add_get("/events", self._events)
        app.router.add_get("/balance", self._escrow_balance)
        app.router.add_get("/balance/{address}", self._balance)
        app.router.add_get("/deed/{token_id}", self._deed)
        app.router.add_get("/account/{address}/deeds", self._account_deeds)
        app.router.add_get("/nonce/{address}", self._nonce)
        app.router.add_post("/tx/mint", self._submit_mint)
        app.router.add_post("/tx/approve_deed", self._submit_approve_deed)
        app.router.add_post("/tx/list", self._submit_list)
        app.router.add_post("/tx/deposit", self._submit_deposit)
        app.router.add_post("/tx/fund", self._submit_fund)
        app.router.add_post("/tx/inspect", self._submit_inspect)
        app.router.add_post("/tx/approve", self._submit_approve)
        app.router.add_post("/tx/finalize", self._submit_finalize)
        app.router.add_post("/tx/cancel", self._submit_cancel)

    # ── request helpers ──────────────────────────────────────────

    async def _read_body(self, request: web.Request) -> dict[str, Any]:
        try:
            body = await request.json()
        except ValueError as exc:
            raise web.HTTPBadRequest(text="Invalid JSON body") from exc
        if not isinstance(body, dict):
            raise web.HTTPBadRequest(text="JSON body must be an object")
        return body

    def _authenticate(self, body: dict[str, Any]) -> str:
        """Return the caller address named (and, if required, signed) in *body*."""
        account = body.get("account")
        if not isinstance(account, str) or not account:
            raise web.HTTPBadRequest(text="account required")
        if not self.require_signatures:
            return account

        pub_hex = body.get("public_key", "")
        signature = body.get("signature", "")
        if not isinstance(pub_hex, str) or not isinstance(signature, str) or not signature:
            raise web.HTTPUnauthorized(text="public_key and signature required")
        try:
            public_key = bytes.fromhex(pub_hex)
        except ValueError:
            raise web.HTTPUnauthorized(text="public_key must be hex")
        if address_from_public_key(public_key).lower() != account.lower():
            raise web.HTTPUnauthorized(text="public_key does not match account")
        if not verify_payload(public_key, body, signature):
            raise web.HTTPUnauthorized(text="Invalid signature")
        nonce = _parse_whole(body.get("nonce"))
        if nonce is None or not 0 < nonce <= MAX_NONCE:
            raise web.HTTPBadRequest(text="nonce must be a positive integer")
        self.node.use_nonce(account, nonce)
        return account

    async def _caller_and_token(self, request: web.Request) -> tuple[dict[str, Any], str, int]:
        body = await self._read_body(request)
        caller = self._authenticate(body)
        token_id = _safe_int(body.get("token_id"), "token_id")
        return body, caller, token_id

    def _listing_response(self, token_id: int, status: str, **extra: Any) -> web.Response:
        listing = self.node.ledger.get_listing(token_id)
        body = {"status": status, "listing": listing.to_dict() if listing else None}
        body.update(extra)
        return web.json_response(body, dumps=_json_dumps)

    # ── query handlers ───────────────────────────────────────────

    async def _health(self, _request: web.Request) -> web.Response:
        store_ok = True
        if self.node.store is not None:
            try:
                self.node.store.load_balances()
            except Exception:
                logger.exception("Store health check failed")
                store_ok = False
        return web.json_response(
            {"ok": store_ok, "checks": {"store": "ok" if store_ok else "degraded"}},
            status=200 if store_ok else 503,
        )

    async def _status(self, _request: web.Request) -> web.Response:
        return web.json_response(self.node.status(), dumps=_json_dumps)

    async def _parties(self, _request: web.Request) -> web.Response:
        ledger = self.node.ledger
        return web.json_response({
            "escrow": ledger.address,
            "nft_address": ledger.nft_address,
            "seller": ledger.seller,
            "inspector": ledger.inspector,
            "lender": ledger.lender,
        })

    async def _listings(self, _request: web.Request) -> web.Response:
        listings = [x.to_dict() for x in self.node.ledger.active_listings()]
        return web.json_response({"listings": listings, "count": len(listings)}, dumps=_json_dumps)

    async def _listing(self, request: web.Request) -> web.Response:
        token_id = _safe_int(request.match_info["token_id"], "token_id")
        listing = self.node.ledger.get_listing(token_id)
        if listing is None:
            raise web.HTTPNotFound(text=f"Token {token_id} has never been listed")
        return web.json_response(listing.to_dict(), dumps=_json_dumps)

    async def _listing_events(self, request: web.Request) -> web.Response:
        token_id = _safe_int(request.match_info["token_id"], "token_id")
        events = [e.to_dict() for e in self.node.ledger.events(token_id)]
        return web.json_response({"token_id": token_id, "events": events}, dumps=_json_dumps)

    async def _events(self, _request: web.Request) -> web.Response:
        events = [e.to_dict() for e in self.node.ledger.events()]
        return web.json_response({"events": events}, dumps=_json_dumps)

    async def _escrow_balance(self, _request: web.Request) -> web.Response:
        ledger = self.node.ledger
        return web.json_response({"address": ledger.address, "balance": ledger.get_balance()})

    async def _balance(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        return web.json_response(
            {"address": address, "balance": self.node.balances.balance_of(address)}
        )

    async def _deed(self, request: web.Request) -> web.Response:
        token_id = _safe_int(request.match_info["token_id"], "token_id")
        deed = self.node.registry.deeds.get(token_id)
        if deed is None:
            raise UnknownToken(f"Token {token_id} does not exist")
        return web.json_response(deed.to_dict())

    async def _account_deeds(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        return web.json_response(
            {"address": address, "tokens": self.node.registry.tokens_of(address)}
        )

    async def _nonce(self, request: web.Request) -> web.Response:
        address = request.match_info["address"]
        return web.json_response(
            {"address": address, "nonce": self.node.ledger.last_nonce(address)}
        )

    # ── transaction handlers ─────────────────────────────────────

    async def _submit_mint(self, request: web.Request) -> web.Response:
        """POST /tx/mint  Body: {"account", "uri"}"""
        body = await self._read_body(request)
        caller = self._authenticate(body)
        uri = body.get("uri", "")
        if not isinstance(uri, str):
            raise web.HTTPBadRequest(text="uri must be a string")
        token_id = self.node.mint(caller, uri)
        return web.json_response({"status": "minted", "token_id": token_id})

    async def _submit_approve_deed(self, request: web.Request) -> web.Response:
        """POST /tx/approve_deed  Body: {"account", "spender", "token_id"}"""
        body, caller, token_id = await self._caller_and_token(request)
        spender = body.get("spender") or self.node.ledger.address
        self.node.approve_deed(caller, spender, token_id)
        return web.json_response({"status": "approved", "token_id": token_id, "spender": spender})

    async def _submit_list(self, request: web.Request) -> web.Response:
        """POST /tx/list  Body: {"account", "token_id", "buyer", "purchase_price", "escrow_amount"}"""
        body, caller, token_id = await self._caller_and_token(request)
        buyer = body.get("buyer", "")
        if not isinstance(buyer, str) or not buyer:
            raise web.HTTPBadRequest(text="buyer required")
        price = _safe_units(body.get("purchase_price"), "purchase_price")
        earnest = _safe_units(body.get("escrow_amount"), "escrow_amount")
        self.node.list(caller, token_id, buyer, price, earnest)
        return self._listing_response(token_id, "listed")

    async def _submit_deposit(self, request: web.Request) -> web.Response:
        """POST /tx/deposit  Body: {"account", "token_id", "amount"}"""
        body, caller, token_id = await self._caller_and_token(request)
        amount = _safe_units(body.get("amount"), "amount")
        self.node.deposit_earnest(caller, token_id, amount)
        return self._listing_response(token_id, "deposited")

    async def _submit_fund(self, request: web.Request) -> web.Response:
        """POST /tx/fund  Body: {"account", "token_id", "amount"}"""
        body, caller, token_id = await self._caller_and_token(request)
        amount = _safe_units(body.get("amount"), "amount")
        self.node.fund(caller, token_id, amount)
        return self._listing_response(token_id, "funded")

    async def _submit_inspect(self, request: web.Request) -> web.Response:
        """POST /tx/inspect  Body: {"account", "token_id", "passed"}"""
        body, caller, token_id = await self._caller_and_token(request)
        passed = body.get("passed")
        if not isinstance(passed, bool):
            raise web.HTTPBadRequest(text="passed must be true or false")
        self.node.update_inspection_status(caller, token_id, passed)
        return self._listing_response(token_id, "inspected")

    async def _submit_approve(self, request: web.Request) -> web.Response:
        """POST /tx/approve  Body: {"account", "token_id"}"""
        _body, caller, token_id = await self._caller_and_token(request)
        self.node.approve_sale(caller, token_id)
        return self._listing_response(token_id, "approved")

    async def _submit_finalize(self, request: web.Request) -> web.Response:
        """POST /tx/finalize  Body: {"account", "token_id"}"""
        _body, caller, token_id = await self._caller_and_token(request)
        self.node.finalize_sale(caller, token_id)
        return self._listing_response(token_id, "finalized")

    async def _submit_cancel(self, request: web.Request) -> web.Response:
        """POST /tx/cancel  Body: {"account", "token_id"}"""
        _body, caller, token_id = await self._caller_and_token(request)
        recipient = self.node.cancel_sale(caller, token_id)
        return self._listing_response(token_id, "cancelled", refund_recipient=recipient)


def _json_dumps(obj: Any) -> str:
    """JSON serialiser that handles non-standard types."""
    return json.dumps(obj, default=str)
