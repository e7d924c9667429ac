# model/attendees.py
from __future__ import annotations
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..errors import AttendeeNotFoundError, ValidationError
from ..helpers import is_valid_email
from ..log import logger
from .db import Attendee, Event

EDITABLE_FIELDS = ("name", "email", "phone", "checked_in")


async def list_attendees(
        db: AsyncSession, q: Optional[str] = None,
        event_id: Optional[str] = None, limit: int = 500,
) -> List[Attendee]:
    stmt = select(Attendee)
    if event_id:
        stmt = stmt.where(Attendee.event_id == event_id)
    if q and q.strip():
        like = f"%{q.strip().lower()}%"
        stmt = stmt.where(or_(
            func.lower(Attendee.name).like(like),
            func.lower(Attendee.email).like(like),
            func.lower(Attendee.code).like(like),
        ))
    stmt = stmt.order_by(Attendee.created_at.desc(), Attendee.seat)
    stmt = stmt.limit(max(1, min(limit, 2000)))
    async with db.begin():
        rows = await db.scalars(stmt)
        return list(rows.all())


async def get_attendee(db: AsyncSession, attendee_id: str) -> Attendee:
    async with db.begin():
        attendee = await db.get(Attendee, attendee_id)
    if attendee is None:
        raise AttendeeNotFoundError()
    return attendee


async def update_attendee(
        db: AsyncSession, attendee_id: str, changes: Dict[str, Any]
) -> Attendee:
    # code, event and purchase linkage are not editable
    unknown = set(changes) - set(EDITABLE_FIELDS)
    if unknown:
        raise ValidationError("Fields are not editable",
                              details=sorted(unknown))
    nulls = sorted(k for k, v in changes.items()
                   if v is None and k != "phone")
    if nulls:
        raise ValidationError("Fields cannot be null", details=nulls)
    if "email" in changes and not is_valid_email(changes["email"]):
        raise ValidationError("email is invalid")
    if "name" in changes and not (changes["name"] or "").strip():
        raise ValidationError("name is required")

    async with db.begin():
        attendee = await db.get(Attendee, attendee_id)
        if attendee is None:
            raise AttendeeNotFoundError()
        for key, value in changes.items():
            if isinstance(value, str):
                value = value.strip()
            if key == "phone" and not value:
                value = None
            setattr(attendee, key, value)
    logger.bind(attendee_id=attendee_id, fields=sorted(changes)).info(
        "Attendee updated"
    )
    return attendee


async def delete_attendee(db: AsyncSession, attendee_id: str) -> None:
    async with db.begin():
        attendee = await db.get(Attendee, attendee_id)
        if attendee is None:
            raise AttendeeNotFoundError()
        await db.delete(attendee)
    logger.bind(attendee_id=attendee_id, code=attendee.code).info(
        "Attendee deleted"
    )


async def _with_event_name(
        db: AsyncSession, attendee: Attendee
) -> Tuple[Attendee, str]:
    event = await db.get(Event, attendee.event_id)
    return attendee, (event.name if event is not None else "")


async def toggle_checkin(
        db: AsyncSession, code: str
) -> Tuple[Attendee, str]:
    """Flip checked_in. A second call un-checks the attendee."""
    async with db.begin():
        attendee = await db.scalar(
            select(Attendee).where(Attendee.code == code)
        )
        if attendee is None:
            raise AttendeeNotFoundError()
        attendee.checked_in = not attendee.checked_in
        attendee, event_name = await _with_event_name(db, attendee)
    logger.bind(code=code, checked_in=attendee.checked_in).info(
        "Check-in toggled"
    )
    return attendee, event_name


async def check_in_once(
        db: AsyncSession, code: str
) -> Tuple[Attendee, str, bool]:
    """Set checked_in; returns (attendee, event name, already_checked_in)."""
    async with db.begin():
        attendee = await db.scalar(
            select(Attendee).where(Attendee.code == code)
        )
        if attendee is None:
            raise AttendeeNotFoundError()
        already = bool(attendee.checked_in)
        if not already:
            attendee.checked_in = True
        attendee, event_name = await _with_event_name(db, attendee)
    if already:
        logger.bind(code=code, event=event_name).info(
            "Attendee already checked in"
        )
    else:
        logger.bind(code=code, event=event_name).info("Attendee checked in")
    return attendee, event_name, already


async def summary(db: AsyncSession) -> Dict[str, int]:
    async with db.begin():
        total = await db.scalar(select(func.count(Attendee.id)))
        # the primary row of each purchase carries the session id
        paid = await db.scalar(
            select(func.count(Attendee.id)).where(
                Attendee.payment_session_id.is_not(None)
            )
        )
        checked_in = await db.scalar(
            select(func.count(Attendee.id)).where(
                Attendee.checked_in.is_(True)
            )
        )
        capacity = await db.scalar(
            select(func.coalesce(func.sum(Event.capacity), 0)).where(
                Event.is_active.is_(True)
            )
        )
        active_taken = await db.scalar(
            select(func.count(Attendee.id))
            .join(Event, Event.id == Attendee.event_id)
            .where(Event.is_active.is_(True))
        )
    total = int(total or 0)
    return {
        "paid": int(paid or 0),
        "guests": total - int(paid or 0),
        "total": total,
        "checked_in": int(checked_in or 0),
        "capacity": int(capacity or 0),
        "remaining": int(capacity or 0) - int(active_taken or 0),
    }
