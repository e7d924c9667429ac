# model/capacity.py
"""
Capacity ledger: seats left for an event, computed from a fresh COUNT(*)
over attendee rows every time it is asked. Check-ins and edits don't touch the
count, so there is no counter to drift.

Seat rows go in through `guarded_seat_insert`, which writes nothing once the
count has reached capacity. On Postgres the event row is locked first, so
concurrent purchases for one event insert one after the other; SQLite runs
one writer at a time anyway.
"""
from __future__ import annotations
from typing import Any, Dict

from sqlalchemy import func, insert, literal, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import EventNotFoundError
from .db import Attendee, Event


async def count_attendees(db: AsyncSession, event_id: str) -> int:
    n = await db.scalar(
        select(func.count(Attendee.id)).where(Attendee.event_id == event_id)
    )
    return int(n or 0)


async def remaining_capacity(db: AsyncSession, event_id: str) -> int:
    async with db.begin():
        event = await db.get(Event, event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        taken = await count_attendees(db, event_id)
    return event.capacity - taken


async def event_stats(db: AsyncSession, event_id: str) -> Dict[str, Any]:
    async with db.begin():
        event = await db.get(Event, event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        total = await count_attendees(db, event_id)
        checked_in = await db.scalar(
            select(func.count(Attendee.id)).where(
                Attendee.event_id == event_id,
                Attendee.checked_in.is_(True),
            )
        )
    return {
        "event_id": event.id,
        "name": event.name,
        "capacity": event.capacity,
        "total_attendees": total,
        "checked_in": int(checked_in or 0),
        "remaining": event.capacity - total,
        "is_full": total >= event.capacity,
        "revenue": float(event.price * total),
        "price_per_ticket": float(event.price),
    }


def guarded_seat_insert(values: Dict[str, Any]):
    """INSERT .. SELECT of one attendee row, only while the event has room."""
    event_id = values["event_id"]
    taken = (
        select(func.count(Attendee.id))
        .where(Attendee.event_id == event_id)
        .correlate(None)
        .scalar_subquery()
    )
    capacity = (
        select(Event.capacity)
        .where(Event.id == event_id)
        .correlate(None)
        .scalar_subquery()
    )
    cols = Attendee.__table__.c
    row = select(
        *[literal(v, cols[k].type).label(k) for k, v in values.items()]
    ).where(taken < capacity)
    return insert(Attendee.__table__).from_select(list(values), row)


async def lock_event(db: AsyncSession, event_id: str) -> None:
    # call inside the inserting transaction
    if db.bind.dialect.name == "postgresql":
        await db.execute(
            select(Event.id).where(Event.id == event_id).with_for_update()
        )
