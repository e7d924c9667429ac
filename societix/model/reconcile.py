# model/reconcile.py
"""
Turns a paid checkout session into attendee rows, exactly once per purchase.

Two callers race for the same session id: the provider webhook (delivered at
least once) and the buyer's success-page poll. Both land here. Coordination
is through the database only:

- the purchase row carries `payment_session_id` (UNIQUE) and `fulfilled`,
- every attendee row carries `order_id` + `seat` (UNIQUE together),
- every attendee row carries `code` (UNIQUE).

The purchase row is written before any seat. Once every seat exists it is
flipped to fulfilled, and from then on an invocation for that session
returns whatever rows are stored and writes nothing, even if an admin has
since deleted some of them.

Seats are committed one by one. If seat k fails for a reason other than a
constraint conflict, seats 0..k-1 stay and `AllocationError` is raised; the
purchase stays unfulfilled and the next invocation for the same session
(webhook redelivery or poll) allocates only the missing seats.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AllocationError, CapacityExceededError
from ..helpers import new_id, now_ts
from ..log import logger
from .capacity import guarded_seat_insert, lock_event, remaining_capacity
from .codes import next_code
from .db import Attendee, Purchase
from .purchase import CheckoutSession, PurchaseIntent

MAX_CODE_ATTEMPTS = 5


@dataclass
class ReconcileResult:
    order_id: str
    attendees: List[Attendee]
    # True if this call wrote at least one row
    created: bool
    # True for exactly one caller per purchase: the one that marked it
    # fulfilled
    notify: bool = False

    @property
    def primary(self) -> Optional[Attendee]:
        for a in self.attendees:
            if a.payment_session_id is not None:
                return a
        return self.attendees[0] if self.attendees else None


def seat_name(buyer_name: str, seat: int) -> str:
    if seat == 0:
        return buyer_name
    return f"{buyer_name} (Guest {seat})"


async def find_purchase(
        db: AsyncSession, session_id: str
) -> Optional[Purchase]:
    async with db.begin():
        return await db.scalar(
            select(Purchase)
            .where(Purchase.payment_session_id == session_id)
            # another session may have fulfilled it meanwhile
            .execution_options(populate_existing=True)
        )


async def find_order(db: AsyncSession, order_id: str) -> List[Attendee]:
    async with db.begin():
        rows = await db.scalars(
            select(Attendee)
            .where(Attendee.order_id == order_id)
            .order_by(Attendee.seat)
        )
        return list(rows.all())


async def find_by_session(
        db: AsyncSession, session_id: str
) -> List[Attendee]:
    """Read path used by the success poll: [] until fulfilled."""
    purchase = await find_purchase(db, session_id)
    if purchase is None or not purchase.fulfilled:
        return []
    return await find_order(db, purchase.order_id)


async def _register(db: AsyncSession, intent: PurchaseIntent,
                    session_id: str) -> Purchase:
    purchase = Purchase(
        order_id=intent.order_id,
        payment_session_id=session_id,
        event_id=intent.event_id,
        quantity=intent.quantity,
        fulfilled=False,
        created_at=now_ts(),
    )
    try:
        async with db.begin():
            db.add(purchase)
            await db.flush()
    except IntegrityError:
        # a concurrent invocation registered it first
        found = await find_purchase(db, session_id)
        if found is None:
            raise
        return found
    return purchase


async def _mark_fulfilled(db: AsyncSession, order_id: str) -> bool:
    async with db.begin():
        res = await db.execute(
            update(Purchase)
            .where(Purchase.order_id == order_id,
                   Purchase.fulfilled.is_(False))
            .values(fulfilled=True, fulfilled_at=now_ts())
        )
    return res.rowcount == 1


async def _seat_taken(db: AsyncSession, order_id: str, seat: int,
                      session_id: str) -> bool:
    async with db.begin():
        found = await db.scalar(
            select(Attendee.id).where(
                Attendee.order_id == order_id, Attendee.seat == seat
            )
        )
        if found is None and seat == 0:
            found = await db.scalar(
                select(Attendee.id).where(
                    Attendee.payment_session_id == session_id
                )
            )
    return found is not None


async def _insert_seat(
        db: AsyncSession, intent: PurchaseIntent, session_id: str,
        order_id: str, seat: int,
) -> Optional[str]:
    # returns the new code, or None when a concurrent invocation already
    # wrote this seat; raises CapacityExceededError when the event is full
    last_exc: Optional[IntegrityError] = None
    for _ in range(MAX_CODE_ATTEMPTS):
        code = await next_code(db)
        values = dict(
            id=new_id(),
            name=seat_name(intent.buyer_name, seat),
            email=intent.buyer_email,
            phone=intent.buyer_phone,
            code=code,
            event_id=intent.event_id,
            checked_in=False,
            payment_session_id=session_id if seat == 0 else None,
            order_id=order_id,
            seat=seat,
            created_at=now_ts(),
        )
        try:
            async with db.begin():
                await lock_event(db, intent.event_id)
                res = await db.execute(guarded_seat_insert(values))
        except IntegrityError as exc:
            if await _seat_taken(db, order_id, seat, session_id):
                logger.bind(order_id=order_id, seat=seat).info(
                    "Seat written by concurrent reconciliation"
                )
                return None
            # not our seat -> the code lost a race, draw again
            logger.bind(code=code).warning("Booking code collision")
            last_exc = exc
            continue
        if res.rowcount == 1:
            return code
        # full, unless the seat that filled it is this one
        if await _seat_taken(db, order_id, seat, session_id):
            return None
        raise CapacityExceededError(1, 0)
    raise last_exc


def _missing(rows: List[Attendee], quantity: int) -> List[int]:
    have = {a.seat for a in rows}
    return [s for s in range(quantity) if s not in have]


async def reconcile_purchase(
        db: AsyncSession, session: CheckoutSession
) -> ReconcileResult:
    intent = session.intent()
    sid = session.session_id
    log = logger.bind(session_id=sid, event_id=intent.event_id)

    # 1) idempotence: a fulfilled purchase is never written to again
    purchase = await find_purchase(db, sid)
    order_id = purchase.order_id if purchase is not None else intent.order_id
    if purchase is not None and purchase.fulfilled:
        rows = await find_order(db, order_id)
        log.bind(order_id=order_id, count=len(rows)).warning(
            "Session already reconciled (duplicate delivery)"
        )
        return ReconcileResult(order_id=order_id, attendees=rows,
                               created=False)

    existing = await find_order(db, order_id)
    missing = _missing(existing, intent.quantity)
    if existing:
        log.bind(order_id=order_id, missing=missing).warning(
            "Completing partially allocated order"
        )

    # 2) capacity, from a fresh count
    remaining = await remaining_capacity(db, intent.event_id)
    if remaining < len(missing):
        # seats a concurrent invocation wrote for this order are already
        # counted in `remaining`; they are not missing anymore either
        existing = await find_order(db, order_id)
        missing = _missing(existing, intent.quantity)
        if remaining < len(missing):
            raise CapacityExceededError(len(missing), remaining)

    if purchase is None:
        purchase = await _register(db, intent, sid)
        order_id = purchase.order_id
        if purchase.fulfilled:
            rows = await find_order(db, order_id)
            return ReconcileResult(order_id=order_id, attendees=rows,
                                   created=False)

    # 3) allocation, one committed row per seat, in order
    log.bind(order_id=order_id, quantity=intent.quantity).info(
        "Creating attendees from session"
    )
    created: List[str] = []
    for i, seat in enumerate(missing):
        try:
            code = await _insert_seat(db, intent, sid, order_id, seat)
        except CapacityExceededError:
            log.bind(order_id=order_id, seat=seat, created=created).error(
                "Event filled up during allocation"
            )
            raise CapacityExceededError(len(missing) - i, 0)
        except SQLAlchemyError as exc:
            log.bind(order_id=order_id, seat=seat, created=created).error(
                "Partial allocation: seat insert failed"
            )
            raise AllocationError(order_id, created, seat) from exc
        if code is None:
            continue
        created.append(code)
        log.bind(code=code, seat=seat).info(
            f"Created attendee {seat + 1}/{intent.quantity}"
        )

    # 4) every seat exists now, whoever wrote them
    notify = await _mark_fulfilled(db, order_id)
    rows = await find_order(db, order_id)
    log.bind(order_id=order_id, count=len(rows), codes=created).info(
        "Reconciliation finished"
    )
    return ReconcileResult(
        order_id=order_id, attendees=rows, created=bool(created),
        notify=notify,
    )
