from __future__ import annotations
import sys

import asyncio
import httpx
import logging
import os
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel

from .infra.sql import make_async_engine
from .infra.timings import install_shutdown_report, snapshot, timeit
from .infra.timings import reset as reset_timings

from .model.db import create_schema, MAX_AMOUNT
from .model import accounts
from .model import ledger
from .model.ledger import FeePolicy, GatedAsyncSession
from .model.notify import new_notifier, BACKEND as NOTIFY_BACKEND
from .payments import PaymentAdapter, MockPay, default_adapters
from .auth import hash_password, check_password, mint_token, current_claims
from .errors import (
    TipError, AuthError, MissingField, NotFoundError, ValidationError,
)

from fastapi import (
    Depends, FastAPI, Header, Request, WebSocket, WebSocketDisconnect,
)
from fastapi import Form
from fastapi.exceptions import RequestValidationError
from fastapi.responses import HTMLResponse, ORJSONResponse
from fastapi.templating import Jinja2Templates
from starlette.concurrency import run_in_threadpool
from starlette.middleware.sessions import SessionMiddleware

from .helpers import ct_equal, new_id

import redis.asyncio as redis

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

# ----------------------------
# Config & Constants
# ----------------------------
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("xdtip")

MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/webhook/mockpay"
)
MOCKPAY_ENABLED = os.environ.get("MOCKPAY_ENABLED", "0") == "1"
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    print("NEED DATABASE_URL! e.g. sqlite:///./xdtip.db")
    sys.exit(1)

POLICY = FeePolicy.from_env()
HISTORY_LIMIT = 10
CREATOR_TIPS_MAX = 100

SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")


engine, SessionAsync, _, gated = make_async_engine(DATABASE_URL)

adapters: dict[str, PaymentAdapter] = default_adapters()

app = FastAPI(
    title="xdtip",
    default_response_class=ORJSONResponse,
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)

# log aggregate timings when the worker stops
install_shutdown_report(app)


async def ledger_db():
    async with SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=gated)


def get_notifier():
    notifier = getattr(app.state, "notifier", None)
    if notifier is None:
        raise RuntimeError("Notifier not initialized")
    return notifier


# ----------------------------
# Request bodies
# ----------------------------
class RegisterRequest(BaseModel):
    username: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    role: Optional[str] = None


class LoginRequest(BaseModel):
    email: Optional[str] = None
    password: Optional[str] = None


class TipRequest(BaseModel):
    receiverRoutingKey: Optional[str] = None
    # names used by older clients
    receiverUsername: Optional[str] = None
    to_creator: Optional[str] = None
    # validated by the ledger so the error kind is always InvalidAmount
    amount: Any = None
    message: Optional[str] = None

    @property
    def routing_key(self) -> Optional[str]:
        key = self.receiverRoutingKey or self.receiverUsername or self.to_creator
        return key.strip() if key else None


class GrantRequest(BaseModel):
    username: str
    amount: int
    reference: Optional[str] = None


class MockEmitRequest(BaseModel):
    username: str
    amount: int  # tokens


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.info("xdtip is starting up...")
    logger.info("   - Notification Backend: %s", NOTIFY_BACKEND)
    logger.info("   - Tip fee rate: %s, minimum tip: %d",
                POLICY.fee_rate, POLICY.min_tip)


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=64, max_keepalive_connections=64
        ),
    )


@app.on_event("startup")
async def _notifier_start():
    r = None
    if NOTIFY_BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        r = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "512")),
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )
    app.state.redis = r
    app.state.notifier = new_notifier(r=r)


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _notifier_stop():
    notifier = getattr(app.state, "notifier", None)
    if notifier is not None:
        await notifier.close()
        app.state.notifier = None
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.aclose()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


# ----------------------------
# Error rendering
# ----------------------------
@app.exception_handler(TipError)
async def _tip_error(request: Request, exc: TipError):
    return ORJSONResponse(
        status_code=exc.status_code,
        content={"success": False, "error": exc.as_dict()},
    )


@app.exception_handler(RequestValidationError)
async def _validation_error(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = ".".join(str(p) for p in first.get("loc", ()) if p != "body")
    msg = first.get("msg", "invalid request")
    err = ValidationError(f"{field}: {msg}" if field else msg)
    return ORJSONResponse(
        status_code=err.status_code,
        content={"success": False, "error": err.as_dict()},
    )


@app.exception_handler(Exception)
async def _unexpected_error(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s",
                     request.method, request.url.path)
    return ORJSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": {"kind": "InternalError",
                      "message": "Something went wrong"},
        },
    )


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> None:
    if not is_admin(request):
        raise AuthError("admin login required")


# ----------------------------
# Health
# ----------------------------
@app.get("/")
async def home():
    return {"ok": True, "service": "xdtip"}


# ----------------------------
# Accounts
# ----------------------------
@app.post("/register")
async def register(body: RegisterRequest,
                   db: GatedAsyncSession = Depends(ledger_db)):
    if not body.username or not body.email or not body.password:
        raise MissingField("Fill all fields")
    pw_hash = await run_in_threadpool(hash_password, body.password)
    user = await accounts.register(
        db, body.username, body.email, pw_hash, body.role or "viewer"
    )
    return {"success": True, "message": "Registered!", "user": user}


@app.post("/login")
async def login(body: LoginRequest,
                db: GatedAsyncSession = Depends(ledger_db)):
    if not body.email or not body.password:
        raise MissingField("email and password are required")
    acc = await accounts.get_by_email(db, body.email)
    if acc is None:
        raise AuthError("Invalid credentials")
    ok = await run_in_threadpool(check_password, body.password,
                                 acc.password_hash)
    if not ok:
        raise AuthError("Invalid credentials")
    return {
        "success": True,
        "token": mint_token(acc.id, acc.username),
        "user": {"id": acc.id, "username": acc.username,
                 "balance": acc.balance},
    }


@app.get("/me")
async def me(claims: dict = Depends(current_claims),
             db: GatedAsyncSession = Depends(ledger_db)):
    return {"success": True, "user": await accounts.get_account(
        db, claims["sub"])}


@app.get("/profile/{username}")
async def profile(username: str, db: GatedAsyncSession = Depends(ledger_db)):
    user = await accounts.public_profile(db, username)
    if user is None:
        raise NotFoundError("User not found", kind="AccountNotFound")
    return {"success": True, "user": user}


@app.post("/become-creator")
async def become_creator(claims: dict = Depends(current_claims),
                         db: GatedAsyncSession = Depends(ledger_db)):
    creator = await accounts.become_creator(db, claims["sub"])
    return {"success": True, "message": "User is now a creator", **creator}


# ----------------------------
# Tips
# ----------------------------
@app.post("/tip")
async def send_tip(
    body: TipRequest,
    claims: dict = Depends(current_claims),
    idempotency_key: Optional[str] = Header(None),
    db: GatedAsyncSession = Depends(ledger_db),
):
    if body.amount is None:
        raise MissingField("amount is required")
    if not body.routing_key:
        raise MissingField("receiverRoutingKey is required")

    result = await ledger.settle(
        db, POLICY,
        sender_id=claims["sub"],
        receiver_slug=body.routing_key,
        amount=body.amount,
        message=body.message,
        request_id=idempotency_key,
        notifier=get_notifier(),
    )
    return {
        "success": True,
        "message": f"Sent {result.amount} tokens!",
        "tipId": result.tip_id,
        "creatorReceived": result.creator_received,
        "platformFee": result.platform_fee,
        "replayed": result.replayed,
    }


@app.get("/tip/{request_id}")
async def get_keyed_tip(request_id: str,
                        claims: dict = Depends(current_claims),
                        db: GatedAsyncSession = Depends(ledger_db)):
    result = await ledger.find_settlement(db, claims["sub"], request_id)
    if result is None:
        raise NotFoundError("No tip for this Idempotency-Key",
                            kind="TipNotFound")
    return {
        "success": True,
        "tipId": result.tip_id,
        "receiverRoutingKey": result.creator_slug,
        "amount": result.amount,
        "creatorReceived": result.creator_received,
        "platformFee": result.platform_fee,
        "createdAt": result.as_dict()["created_at"],
    }


@app.get("/creator-tips/{slug}")
async def creator_tips(slug: str, limit: int = 20,
                       db: GatedAsyncSession = Depends(ledger_db)):
    limit = max(1, min(limit, CREATOR_TIPS_MAX))
    tips = await ledger.tip_history(db, slug, limit)
    return {"success": True, "tips": tips}


@app.get("/history")
async def history(claims: dict = Depends(current_claims),
                  db: GatedAsyncSession = Depends(ledger_db)):
    slug = await accounts.creator_slug_for(db, claims["sub"])
    if slug is None:
        return {"success": True, "history": []}
    return {"success": True,
            "history": await ledger.tip_history(db, slug, HISTORY_LIMIT)}


# ----------------------------
# Webhook endpoint (Razorpay / MockPay)
# ----------------------------
@app.post("/webhook/{gateway}")
async def payments_webhook(
    gateway: str,
    request: Request,
    db: GatedAsyncSession = Depends(ledger_db),
):
    adapter = adapters.get(gateway)
    if adapter is None:
        raise NotFoundError("unknown payment gateway")
    # raw bytes: the signature covers exactly what the gateway sent
    payload = await request.body()
    headers = dict(request.headers)
    async with timeit("webhook.reconcile"):
        return await ledger.reconcile(db, adapter, payload, headers)


# ----------------------------
# MockPay: sign and deliver a capture event (dev only)
# ----------------------------
@app.post("/mockpay/emit")
async def mockpay_emit(body: MockEmitRequest):
    if not MOCKPAY_ENABLED:
        raise NotFoundError("MockPay is disabled")
    if not (0 < body.amount <= MAX_AMOUNT):
        raise ValidationError("amount out of range", kind="InvalidAmount")

    mock: MockPay = adapters["mockpay"]
    payment_id = f"mock_{new_id()}"
    payload = mock.build_capture(body.username, body.amount * 100, payment_id)

    client_http: httpx.AsyncClient = app.state.http
    delivered = False
    try:
        resp = await client_http.post(
            MOCK_WEBHOOK_URL,
            content=payload,
            headers={
                mock.signature_header: mock.sign(payload),
                "content-type": "application/json",
            },
        )
        delivered = resp.status_code < 300
    except httpx.HTTPError as e:
        # the caller can simply emit again
        logger.warning("MockPay webhook delivery failed: %s", e)

    return {"ok": True, "payment_id": payment_id, "delivered": delivered}


# ----------------------------
# Overlay: page + live feed
# ----------------------------
@app.get("/overlay/{overlay_key}", response_class=HTMLResponse)
async def overlay_page(request: Request, overlay_key: str,
                       db: GatedAsyncSession = Depends(ledger_db)):
    slug = await accounts.creator_for_overlay(db, overlay_key)
    if slug is None:
        return HTMLResponse("Invalid Overlay Link", status_code=404)
    return templates.TemplateResponse(
        request,
        "overlay.html",
        {"overlay_key": overlay_key, "creator": slug},
    )


@app.websocket("/ws/overlay/{overlay_key}")
async def overlay_feed(websocket: WebSocket, overlay_key: str):
    # the overlay key only ever grants this read-only feed
    async with SessionAsync() as session:
        slug = await accounts.creator_for_overlay(
            GatedAsyncSession(session=session, gated=gated), overlay_key
        )
    if slug is None:
        await websocket.close(code=4404)
        return

    await websocket.accept()
    async with get_notifier().subscribe(slug) as sub:
        await websocket.send_json({"type": "joined", "creator": slug})

        async def _forward():
            async for event in sub:
                await websocket.send_json(event)

        forward = asyncio.create_task(_forward())
        try:
            # overlays only listen; reading is how we notice they left
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            pass
        finally:
            forward.cancel()
            await asyncio.gather(forward, return_exceptions=True)
    logger.info("overlay for %s disconnected", slug)


# ----------------------------
# Admin
# ----------------------------
@app.post("/admin/login")
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = ct_equal(password, ADMIN_PASSWORD)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        return {"success": True}
    logger.warning("SECURITY: failed admin login for %r", username)
    raise AuthError("Invalid credentials.")


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return {"success": True}


@app.post("/api/admin/grant")
async def api_admin_grant(
    body: GrantRequest,
    request: Request,
    db: GatedAsyncSession = Depends(ledger_db),
):
    require_admin(request)
    reference = f"grant:{body.reference or new_id()}"
    res = await ledger.credit_purchase(db, body.username, body.amount,
                                       reference)
    if res["status"] == ledger.UNKNOWN_ACCOUNT:
        raise NotFoundError("User not found", kind="AccountNotFound")
    return {"success": True, "reference": reference, **res}


@app.get("/api/admin/audit")
async def api_admin_audit(request: Request,
                          db: GatedAsyncSession = Depends(ledger_db)):
    require_admin(request)
    return await ledger.audit(db)


@app.get("/api/admin/timings")
async def api_admin_timings(request: Request):
    require_admin(request)
    return {"items": snapshot()}


@app.post("/api/admin/timings/reset")
async def api_admin_timings_reset(request: Request):
    require_admin(request)
    reset_timings()
    return {"success": True}
