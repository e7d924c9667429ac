# model/events.py
from __future__ import annotations
from datetime import date
from decimal import Decimal
from typing import Any, Dict, List

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import ConflictError, EventNotFoundError, ValidationError
from ..helpers import new_id, now_ts
from ..log import logger
from .capacity import count_attendees
from .db import Event

EVENT_FIELDS = (
    "name", "description", "location", "event_date", "event_time",
    "price", "capacity", "is_active",
)
NULLABLE_FIELDS = ("description",)


def _check(fields: Dict[str, Any]) -> None:
    nulls = sorted(k for k, v in fields.items()
                   if v is None and k not in NULLABLE_FIELDS)
    if nulls:
        raise ValidationError("Fields cannot be null", details=nulls)
    problems = []
    for key in ("name", "location", "event_time"):
        if key in fields and not str(fields[key] or "").strip():
            problems.append(f"{key} is required")
    if "price" in fields and Decimal(str(fields["price"])) < 0:
        problems.append("price must be >= 0")
    if "capacity" in fields and int(fields["capacity"]) < 0:
        problems.append("capacity must be >= 0")
    if "event_date" in fields and not isinstance(fields["event_date"], date):
        problems.append("event_date must be a date")
    if problems:
        raise ValidationError("Invalid event", details=problems)


async def create_event(db: AsyncSession, fields: Dict[str, Any]) -> Event:
    missing = [k for k in ("name", "location", "event_date", "event_time",
                           "price", "capacity") if fields.get(k) is None]
    if missing:
        raise ValidationError("Missing required fields", details=missing)
    _check(fields)
    event = Event(
        id=new_id(),
        name=fields["name"].strip(),
        description=(fields.get("description") or None),
        location=fields["location"].strip(),
        event_date=fields["event_date"],
        event_time=fields["event_time"].strip(),
        price=Decimal(str(fields["price"])),
        capacity=int(fields["capacity"]),
        is_active=fields.get("is_active", True),
        created_at=now_ts(),
    )
    async with db.begin():
        db.add(event)
    logger.bind(event_id=event.id, name=event.name).info("Event created")
    return event


async def list_events(
        db: AsyncSession, active_only: bool = False
) -> List[Event]:
    stmt = select(Event)
    if active_only:
        stmt = stmt.where(Event.is_active.is_(True))
    stmt = stmt.order_by(Event.event_date, Event.created_at)
    async with db.begin():
        rows = await db.scalars(stmt)
        return list(rows.all())


async def get_event(db: AsyncSession, event_id: str) -> Event:
    async with db.begin():
        event = await db.get(Event, event_id)
    if event is None:
        raise EventNotFoundError(event_id)
    return event


async def update_event(
        db: AsyncSession, event_id: str, changes: Dict[str, Any]
) -> Event:
    unknown = set(changes) - set(EVENT_FIELDS)
    if unknown:
        raise ValidationError("Unknown event fields",
                              details=sorted(unknown))
    _check(changes)
    async with db.begin():
        event = await db.get(Event, event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        for key, value in changes.items():
            if key == "price":
                value = Decimal(str(value))
            elif isinstance(value, str):
                value = value.strip()
            setattr(event, key, value)
    logger.bind(event_id=event_id, updates=sorted(changes)).info(
        "Event updated"
    )
    return event


async def delete_event(
        db: AsyncSession, event_id: str, hard: bool = False
) -> None:
    """Soft delete flips is_active; hard delete refuses events with tickets."""
    async with db.begin():
        event = await db.get(Event, event_id)
        if event is None:
            raise EventNotFoundError(event_id)
        if hard:
            if await count_attendees(db, event_id) > 0:
                raise ConflictError(
                    "Cannot hard delete event with attendees",
                    details=["Use soft delete (is_active=false) instead "
                             "or remove attendees first"],
                )
            await db.delete(event)
        else:
            event.is_active = False
    logger.bind(event_id=event_id).info(
        "Event hard deleted" if hard else "Event soft deleted"
    )
