from __future__ import annotations
import sys

import httpx
import json
import os
from typing import List, Optional

from .infra.sql import make_async_engine
from .log import logger

from .model.db import Base, Attendee, Event, event_to_dict, attendee_to_dict
from .model import attendees as attendee_ops
from .model import events as event_ops
from .model.capacity import event_stats, remaining_capacity
from .model.codes import is_booking_code, normalize_code
from .model.purchase import PurchaseIntent
from .model.reconcile import find_by_session, reconcile_purchase
from .model.paymentsession import (
        PaymentSessionStore, new_store, BACKEND as PAYSESSION_BACKEND
)
from .mockpay import (
        PaymentAdapter, MockPay, MOCK_SIGNATURE_HEADER, build_mock_event,
        sign_payload,
)
from .stripepay import StripePay
from .mailer import TEMPLATE_DIR, deliver_tickets, format_amount, new_mailer
from .ics import ticket_calendar
from .qr import qr_data_url
from .auth import (
        AdminSession, ADMIN_USERNAME, check_password, issue_token,
        require_admin,
)
from .errors import (
        AllocationError, AppError, AuthError, CapacityExceededError,
        EventNotFoundError, NotFoundError, ValidationError,
)
from .schemas import (
        AttendeeUpdate, CheckoutRequest, EventCreate, EventUpdate,
        LoginRequest,
)

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, RedirectResponse, ORJSONResponse
from fastapi import Form
from fastapi.templating import Jinja2Templates

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.exc import SQLAlchemyError
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from .helpers import new_id, to_minor_units, ct_equal

import redis.asyncio as redis

templates = Jinja2Templates(directory=TEMPLATE_DIR)

# ----------------------------
# Config & Constants
# ----------------------------
MOCK_WEBHOOK_URL = os.environ.get(
    "MOCK_WEBHOOK_URL",
    "http://localhost:8000/payments/webhook"
)
DATABASE_URL = os.environ.get("DATABASE_URL", None)

if DATABASE_URL is None:
    logger.error("DATABASE_URL is not set")
    sys.exit(1)

PAYMENT_PROVIDER = os.environ.get("PAYMENT_PROVIDER", "mock").lower()
CURRENCY = os.environ.get("CURRENCY", "gbp").lower()
CHECKOUT_SESSION_TTL_SECONDS = int(
    os.environ.get("CHECKOUT_SESSION_TTL_SECONDS", "1800")
)
SESSION_SECRET = os.environ.get("SESSION_SECRET", "dev-secret-change-me")
CORS_ORIGINS = [
    o.strip() for o in os.environ.get(
        "CORS_ORIGINS", "http://localhost:3000,http://localhost:8000"
    ).split(",") if o.strip()
]
SITE_NAME = os.environ.get("SITE_NAME", "Societix")


engine, SessionAsync, gated = make_async_engine(DATABASE_URL)


async def get_db() -> AsyncSession:
    async with SessionAsync() as session:
        yield session


def new_adapter(provider: str = PAYMENT_PROVIDER) -> PaymentAdapter:
    if provider == "stripe":
        return StripePay()
    return MockPay()


adapter: PaymentAdapter = new_adapter()

app = FastAPI(
    title="Societix",
    default_response_class=ORJSONResponse,
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(SessionMiddleware, secret_key=SESSION_SECRET)


async def paymentsessions() -> PaymentSessionStore:
    if PAYSESSION_BACKEND == "redis":
        yield new_store(r=app.state.redis,
                        ttl_seconds=CHECKOUT_SESSION_TTL_SECONDS)
    else:
        async with SessionAsync() as session:
            yield new_store(db=session, gated=gated,
                            ttl_seconds=CHECKOUT_SESSION_TTL_SECONDS)


# ----------------------------
# Error rendering
# ----------------------------
@app.exception_handler(AppError)
async def _app_error(request: Request, exc: AppError):
    if exc.status_code >= 500:
        logger.bind(method=request.method, path=request.url.path,
                    error=exc.code).error(exc.message)
    body = {"error": exc.code, "message": exc.message}
    if exc.details:
        body["details"] = exc.details
    return ORJSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def _request_validation_error(request: Request,
                                    exc: RequestValidationError):
    details = []
    for err in exc.errors():
        loc = ".".join(str(p) for p in err.get("loc", ()) if p != "body")
        details.append(f"{loc}: {err.get('msg')}" if loc else err.get("msg"))
    return ORJSONResponse(status_code=400, content={
        "error": ValidationError.code,
        "message": "Validation error",
        "details": details,
    })


# ---
# startup / shutdown
# ---
@app.on_event("startup")
async def _say_hello():
    logger.bind(
        payment_provider=adapter.name,
        payment_sessions=PAYSESSION_BACKEND,
    ).info(f"{SITE_NAME} is starting up")


@app.on_event("startup")
async def _db_init():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        if PAYSESSION_BACKEND != "redis":
            from .model.paymentsession._sql import create_schema
            await create_schema(conn)


@app.on_event("startup")
async def _http_client_start():
    app.state.http = httpx.AsyncClient(
        timeout=5.0,
        limits=httpx.Limits(
            max_connections=512, max_keepalive_connections=512
        ),
    )
    app.state.mailer = new_mailer(app.state.http)


@app.on_event("startup")
async def _redis_start():
    if PAYSESSION_BACKEND == "redis":
        REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379")
        app.state.redis = redis.from_url(
            REDIS_URL,
            decode_responses=True,
            max_connections=int(os.getenv("REDIS_MAX_CONN", "512")),
            socket_timeout=2.0,
            socket_connect_timeout=2.0,
            retry_on_timeout=True,
        )


@app.on_event("shutdown")
async def _http_client_stop():
    http = getattr(app.state, "http", None)
    if http is not None:
        await http.aclose()
        app.state.http = None


@app.on_event("shutdown")
async def _redis_stop():
    r = getattr(app.state, "redis", None)
    if r is not None:
        await r.close()
        app.state.redis = None


@app.on_event("shutdown")
async def _db_stop():
    await engine.dispose()


# ----------------------------
# Helpers
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def _pending(status_code: int, reason: str) -> ORJSONResponse:
    # the client should poll again
    return ORJSONResponse(status_code=status_code,
                          content={"status": "pending", "reason": reason})


def _failed(status_code: int, error: str, message: str = "") -> ORJSONResponse:
    # the client should stop polling
    return ORJSONResponse(status_code=status_code, content={
        "status": "failed", "error": error, "message": message or error,
    })


def _primary(rows: List[Attendee]) -> Attendee:
    for a in rows:
        if a.payment_session_id is not None:
            return a
    return rows[0]


def _ticket(a: Attendee) -> dict:
    item = attendee_to_dict(a)
    item["qr_data_url"] = qr_data_url(a.code)
    return item


async def _confirmed(db: AsyncSession, session_id: str,
                     rows: List[Attendee]) -> dict:
    primary = _primary(rows)
    tickets = [_ticket(a) for a in rows]
    event = await event_ops.get_event(db, primary.event_id)
    cal = ticket_calendar(event, primary.code)
    return {
        "status": "confirmed",
        "order_id": primary.order_id,
        "session_id": session_id,
        "attendee": tickets[rows.index(primary)],
        "attendees": tickets,
        "event": event_to_dict(event),
        "google_calendar_url": cal["google_calendar_url"],
        "ics_base64": cal["ics_base64"],
    }


async def _settle(rs: PaymentSessionStore, psid: str) -> None:
    await rs.set_status(psid, "paid")
    await rs.remove_pending(psid)


def _send_tickets(background: BackgroundTasks, rows: List[Attendee],
                  event: Event, amount_paid: int) -> None:
    primary = _primary(rows)
    background.add_task(
        deliver_tickets, app.state.mailer,
        to_address=primary.email, tickets=rows, event=event,
        amount_paid=amount_paid,
    )


# ----------------------------
# Landing page: events + registration form
# ----------------------------
@app.get("/", response_class=HTMLResponse)
async def landing_page(request: Request, status: Optional[str] = None,
                       order_id: Optional[str] = None,
                       db: AsyncSession = Depends(get_db)):
    events = await event_ops.list_events(db, active_only=True)
    return templates.TemplateResponse(request, "landing.html", {
        "site_name": SITE_NAME,
        "events": [event_to_dict(e) for e in events],
        "status": status,
        "order_id": order_id,
    })


# ----------------------------
# API: events (public)
# ----------------------------
@app.get("/api/events")
async def api_events(active_only: bool = True, include_stats: bool = False,
                     db: AsyncSession = Depends(get_db)):
    events = await event_ops.list_events(db, active_only=active_only)
    items = []
    for e in events:
        item = event_to_dict(e)
        if include_stats:
            item["stats"] = await event_stats(db, e.id)
        items.append(item)
    return {"items": items, "total": len(items)}


@app.get("/api/events/{event_id}")
async def api_event(event_id: str, db: AsyncSession = Depends(get_db)):
    event = await event_ops.get_event(db, event_id)
    item = event_to_dict(event)
    item["remaining"] = await remaining_capacity(db, event_id)
    return item


# ----------------------------
# API: checkout
# ----------------------------
@app.post("/api/checkout/session")
async def create_checkout_session(
    payload: CheckoutRequest,
    db: AsyncSession = Depends(get_db),
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    event = await event_ops.get_event(db, payload.event_id)
    if not event.is_active:
        raise EventNotFoundError(payload.event_id)

    # advisory only: the engine re-checks once payment succeeded
    remaining = await remaining_capacity(db, event.id)
    if remaining < payload.quantity:
        raise CapacityExceededError(payload.quantity, remaining)

    intent = PurchaseIntent(
        order_id=new_id(),
        event_id=event.id,
        buyer_name=payload.name,
        buyer_email=payload.email,
        buyer_phone=payload.phone,
        quantity=payload.quantity,
    )
    amount = to_minor_units(event.price, payload.quantity)
    session = await adapter.create_session(rs, intent, amount, CURRENCY,
                                           event.name)
    logger.bind(order_id=intent.order_id, event_id=event.id,
                quantity=intent.quantity,
                session_id=session["payment_session_id"]).info(
        "Checkout session created"
    )
    return {
        "order_id": intent.order_id,
        "session_id": session["payment_session_id"],
        "redirect_url": session["redirect_url"],
        "amount": amount,
        "currency": CURRENCY,
    }


# ----------------------------
# API: success poll (buyer's browser, after the provider redirect)
# ----------------------------
@app.get("/api/checkout/success")
async def checkout_success(
    session_id: str,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    session_id = session_id.strip()
    if not session_id:
        raise ValidationError("session_id is required")
    log = logger.bind(session_id=session_id)

    rows = await find_by_session(db, session_id)
    if rows:
        return await _confirmed(db, session_id, rows)

    # not reconciled yet: ask the provider
    try:
        session = await adapter.retrieve_session(rs, session_id)
    except AppError as e:
        log.bind(error=e.code).warning("Provider lookup failed")
        return _pending(503, e.code)
    if session is None:
        return _failed(404, "session_not_found", "Payment session not found")
    if not session.paid:
        return _pending(425, "payment_not_completed")

    try:
        async with gated():
            result = await reconcile_purchase(db, session)
    except (CapacityExceededError, NotFoundError, ValidationError) as e:
        log.bind(error=e.code, details=e.details).error(
            "Purchase cannot be fulfilled"
        )
        return _failed(e.status_code, e.code, e.message)
    except AllocationError as e:
        return _pending(503, e.code)
    except SQLAlchemyError as e:
        log.bind(error=str(e)).error("Database error during reconciliation")
        return _pending(503, "database_error")

    await _settle(rs, session_id)
    if not result.attendees:
        # fulfilled once, every ticket removed by an admin since
        return _failed(410, "tickets_removed",
                       "The tickets for this payment were removed")
    body = await _confirmed(db, session_id, result.attendees)
    if result.notify:
        event = await event_ops.get_event(db, result.attendees[0].event_id)
        _send_tickets(background, result.attendees, event,
                      session.amount_total)
    return body


@app.get("/checkout/success", response_class=HTMLResponse)
async def checkout_success_page(request: Request, session_id: str = ""):
    return templates.TemplateResponse(request, "success.html", {
        "site_name": SITE_NAME,
        "session_id": session_id,
    })


# ----------------------------
# Webhook endpoint (shared for Mock/Stripe)
# ----------------------------
@app.post("/payments/webhook")
async def payments_webhook(
    request: Request,
    background: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    payload = await request.body()
    headers = dict(request.headers)

    # raises 400 before anything is processed
    event = adapter.verify_webhook(payload, headers)
    kind = adapter.event_kind(event)  # succeeded | failed | canceled
    psid, idem = adapter.event_ids(event)
    log = logger.bind(session_id=psid, event_key=idem, kind=kind)
    if kind == "ignored":
        return {"ok": True, "ignored": True}
    if not psid:
        raise HTTPException(400, detail="missing payment_session_id")

    if kind in ("failed", "canceled"):
        await rs.set_status(psid, kind)
        await rs.remove_pending(psid)
        log.info("Payment not completed")
        return {
            "ok": True,
            "order_status": "FAILED" if kind == "failed" else "CANCELED"
        }

    session = adapter.event_session(event)
    try:
        async with gated():
            result = await reconcile_purchase(db, session)
    except (CapacityExceededError, NotFoundError, ValidationError) as e:
        # paid but unfulfillable: redelivery won't help, needs a human
        log.bind(error=e.code, details=e.details).error(
            "Paid session could not be fulfilled"
        )
        await rs.remove_pending(psid)
        return {"ok": False, "order_status": "UNFULFILLED", "error": e.code}
    except (AllocationError, SQLAlchemyError) as e:
        # the provider redelivers on 5xx
        log.bind(error=str(e)).error("Webhook processing failed")
        return ORJSONResponse(status_code=500, content={
            "ok": False, "error": "processing_failed",
        })

    await _settle(rs, psid)
    if result.notify:
        ev = await event_ops.get_event(db, result.attendees[0].event_id)
        _send_tickets(background, result.attendees, ev,
                      session.amount_total)
    return {
        "ok": True,
        "order_status": "PAID",
        "order_id": result.order_id,
        "created": result.created,
        "codes": [a.code for a in result.attendees],
    }


# ----------------------------
# MockPay UI (simple page with 3 buttons)
# ----------------------------
@app.get("/mockpay/{psid}", response_class=HTMLResponse)
async def mockpay_screen(
    request: Request, psid: str,
    db: AsyncSession = Depends(get_db),
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    ps = await rs.get_payment_session(psid)
    if not ps:
        raise HTTPException(404, "payment session not found")
    async with db.begin():
        event = await db.get(Event, ps["event_id"])
    return templates.TemplateResponse(request, "mockpay.html", {
        "site_name": SITE_NAME,
        "psid": psid,
        "order_id": ps["order_id"],
        "event_name": event.name if event is not None else ps["event_id"],
        "name": ps["name"],
        "email": ps["email"],
        "qty": int(ps["quantity"]),
        "amount": format_amount(int(ps["amount"]), ps["currency"]),
        "webhook_url": MOCK_WEBHOOK_URL,
    })


@app.post("/mockpay/{psid}/emit")
async def mockpay_emit(
    psid: str, request: Request,
    rs: PaymentSessionStore = Depends(paymentsessions),
):
    form = await request.form()
    kind = form.get("t")  # succeeded|failed|canceled
    if kind not in {"succeeded", "failed", "canceled"}:
        raise HTTPException(400, detail="invalid kind")

    ps = await rs.get_payment_session(psid)
    if not ps:
        raise HTTPException(404, "payment session not found")

    # the provider's own record flips first, the webhook follows
    await rs.set_status(psid, "paid" if kind == "succeeded" else kind)

    payload = json.dumps(build_mock_event(psid, kind, ps)).encode()
    client_http: httpx.AsyncClient = app.state.http
    try:
        await client_http.post(
            MOCK_WEBHOOK_URL,
            content=payload,
            headers={
                MOCK_SIGNATURE_HEADER: sign_payload(payload),
                "content-type": "application/json",
            },
        )
    except httpx.HTTPError as e:
        # the success page reconciles on its own
        logger.bind(session_id=psid, error=str(e)).warning(
            "Webhook delivery failed"
        )

    if kind == "succeeded":
        return RedirectResponse(
            url=f"/checkout/success?session_id={psid}",
            status_code=303
        )
    return RedirectResponse(
        url=f"/?status={kind}&order_id={ps['order_id']}",
        status_code=303
    )


# ----------------------------
# Admin: login
# ----------------------------
@app.post("/api/admin/login")
async def api_admin_login(payload: LoginRequest):
    if not check_password(payload.password):
        logger.warning("Admin login failed")
        raise AuthError("Invalid password")
    logger.info("Admin login")
    return issue_token()


@app.get("/admin/login", response_class=HTMLResponse)
async def admin_login_get(request: Request, next: str | None = "/admin"):
    return templates.TemplateResponse(
        request, "login.html",
        {"site_name": SITE_NAME, "next": next, "error": None}
    )


@app.post("/admin/login", response_class=HTMLResponse)
async def admin_login_post(
    request: Request,
    username: str = Form(...),
    password: str = Form(...),
    next: str = Form("/admin"),
):
    ok_user = ct_equal(username.strip(), ADMIN_USERNAME)
    ok_pass = check_password(password)
    if ok_user and ok_pass:
        request.session["admin_user"] = username.strip()
        # local paths only
        dest = next if (next or "").startswith("/") else "/admin"
        return RedirectResponse(url=dest, status_code=HTTP_303_SEE_OTHER)
    # auth failed
    return templates.TemplateResponse(
        request, "login.html",
        {"site_name": SITE_NAME, "next": next,
         "error": "Invalid credentials."},
        status_code=401,
    )


@app.get("/admin/logout")
async def admin_logout(request: Request):
    request.session.clear()
    return RedirectResponse(url="/", status_code=HTTP_303_SEE_OTHER)


@app.get("/admin", response_class=HTMLResponse)
async def admin_page(request: Request):
    if not is_admin(request):
        dest = request.url.path
        return RedirectResponse(
            url=f"/admin/login?next={dest}",
            status_code=307
        )
    return templates.TemplateResponse(request, "admin.html", {
        "site_name": SITE_NAME,
        "admin_user": request.session.get("admin_user"),
    })


# ----------------------------
# Admin: attendees
# ----------------------------
@app.get("/api/admin/attendees")
async def api_admin_attendees(
    q: Optional[str] = None,
    event_id: Optional[str] = None,
    limit: int = 500,
    db: AsyncSession = Depends(get_db),
    admin: AdminSession = Depends(require_admin),
):
    rows = await attendee_ops.list_attendees(db, q=q, event_id=event_id,
                                             limit=limit)
    return {"items": [attendee_to_dict(a) for a in rows],
            "total": len(rows)}


@app.get("/api/admin/attendees/{attendee_id}")
async def api_admin_attendee(
    attendee_id: str,
    db: AsyncSession = Depends(get_db),
    admin: AdminSession = Depends(require_admin),
):
    return attendee_to_dict(await attendee_ops.get_attendee(db, attendee_id))


@app.put("/api/admin/attendees/{attendee_id}")
async def api_admin_update_attendee(
    attendee_id: str,
    payload: AttendeeUpdate,
    db: AsyncSession = Depends(get_db),
    admin: AdminSession = Depends(require_admin),
):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("No fields to update")
    attendee = await attendee_ops.update_attendee(db, attendee_id, changes)
    return attendee_to_dict(attendee)


@app.delete("/api/admin/attendees/{attendee_id}")
async def api_admin_delete_attendee(
    attendee_id: str,
    db: AsyncSession = Depends(get_db),
    admin: AdminSession = Depends(require_admin),
):
    await attendee_ops.delete_attendee(db, attendee_id)
    return {"ok": True, "deleted": attendee_id}


@app.post("/api/admin/attendees/{code}/checkin")
async def api_admin_toggle_checkin(
    code: str,
    db: AsyncSession = Depends(get_db),
    admin: AdminSession = Depends(require_admin),
):
    attendee, event_name = await attendee_ops.toggle_checkin(
        db, normalize_code(code)
    )
    return {
        "code": attendee.code,
        "name": attendee.name,
        "event_name": event_name,
        "checked_in": bool(attendee.checked_in),
        "attendee": attendee_to_dict(attendee),
    }


@app.post("/api/admin/checkin/{code}")
async def api_admin_scan_checkin(
    code: str,
    db: AsyncSession = Depends(get_db),
    admin: AdminSession = Depends(require_admin),
):
    code = normalize_code(code)
    if not is_booking_code(code):
        raise ValidationError("Invalid booking code format")
    attendee, event_name, already = await attendee_ops.check_in_once(
        db, code
    )
    return {
        "ok": True,
        "already_checked_in": already,
        "code": attendee.code,
        "name": attendee.name,
        "event_name": event_name,
        "attendee": attendee_to_dict(attendee),
    }


@app.get("/api/admin/summary")
async def api_admin_summary(
    db: AsyncSession = Depends(get_db),
    admin: AdminSession = Depends(require_admin),
):
    return await attendee_ops.summary(db)


@app.get("/api/admin/pending")
async def api_admin_pending(
    limit: int = 100,
    rs: PaymentSessionStore = Depends(paymentsessions),
    admin: AdminSession = Depends(require_admin),
):
    limit = max(1, min(limit, 500))
    total, items = await rs.get_recent_payment_sessions(limit=limit)
    return {"items": items, "limit": limit, "total": total}


# ----------------------------
# Admin: events
# ----------------------------
@app.post("/api/events", status_code=201)
async def api_create_event(
    payload: EventCreate,
    db: AsyncSession = Depends(get_db),
    admin: AdminSession = Depends(require_admin),
):
    event = await event_ops.create_event(db, payload.model_dump())
    return event_to_dict(event)


@app.put("/api/events/{event_id}")
async def api_update_event(
    event_id: str,
    payload: EventUpdate,
    db: AsyncSession = Depends(get_db),
    admin: AdminSession = Depends(require_admin),
):
    changes = payload.model_dump(exclude_unset=True)
    if not changes:
        raise ValidationError("No fields to update")
    event = await event_ops.update_event(db, event_id, changes)
    return event_to_dict(event)


@app.delete("/api/events/{event_id}")
async def api_delete_event(
    event_id: str,
    hard: bool = False,
    db: AsyncSession = Depends(get_db),
    admin: AdminSession = Depends(require_admin),
):
    await event_ops.delete_event(db, event_id, hard=hard)
    return {"ok": True, "deleted": event_id, "hard": hard}


@app.get("/api/events/{event_id}/summary")
async def api_event_summary(
    event_id: str,
    db: AsyncSession = Depends(get_db),
    admin: AdminSession = Depends(require_admin),
):
    return await event_stats(db, event_id)


@app.get("/api/events/{event_id}/attendees")
async def api_event_attendees(
    event_id: str,
    db: AsyncSession = Depends(get_db),
    admin: AdminSession = Depends(require_admin),
):
    await event_ops.get_event(db, event_id)
    rows = await attendee_ops.list_attendees(db, event_id=event_id)
    return {"items": [attendee_to_dict(a) for a in rows],
            "total": len(rows)}
