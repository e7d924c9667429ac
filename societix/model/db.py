from sqlalchemy.orm import declarative_base
from ..helpers import to_iso
from sqlalchemy import (
    Column,
    Integer,
    String,
    Float,
    Boolean,
    Date,
    Numeric,
    ForeignKey,
    UniqueConstraint,
    CheckConstraint,
    Index,
)


Base = declarative_base()


# ----------------------------
# ORM models
# ----------------------------
class Event(Base):
    __tablename__ = "events"
    __table_args__ = (
        CheckConstraint("capacity >= 0", name="ck_events_capacity"),
    )
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    description = Column(String, nullable=True)
    location = Column(String, nullable=False)
    event_date = Column(Date, nullable=False)
    # free-form range, e.g. "18:00-21:00"
    event_time = Column(String, nullable=False)
    price = Column(Numeric(10, 2), nullable=False)  # major units (GBP)
    capacity = Column(Integer, nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(Float, nullable=False)


class Attendee(Base):
    __tablename__ = "attendees"
    __table_args__ = (
        # one row per purchased seat
        UniqueConstraint("order_id", "seat", name="uq_attendees_order_seat"),
        Index("ix_attendees_event_id", "event_id"),
        Index("ix_attendees_order_id", "order_id"),
    )
    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    phone = Column(String, nullable=True)

    # booking code, e.g. SS-7KQ2M9XD; immutable once assigned
    code = Column(String, nullable=False, unique=True)
    event_id = Column(String, ForeignKey("events.id"), nullable=False)
    checked_in = Column(Boolean, nullable=False, default=False)

    # set on the primary (seat 0) row only
    payment_session_id = Column(String, nullable=True, unique=True)
    # shared by every row of one purchase
    order_id = Column(String, nullable=False)
    seat = Column(Integer, nullable=False, default=0)

    created_at = Column(Float, nullable=False)


class Purchase(Base):
    """One row per paid checkout session, written before its seats."""
    __tablename__ = "purchases"
    order_id = Column(String, primary_key=True)
    payment_session_id = Column(String, nullable=False, unique=True)
    event_id = Column(String, nullable=False, index=True)
    quantity = Column(Integer, nullable=False)
    # set once every seat exists; never cleared
    fulfilled = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)
    fulfilled_at = Column(Float, nullable=True)


def event_to_dict(e: Event) -> dict:
    return {
        "id": e.id,
        "name": e.name,
        "description": e.description,
        "location": e.location,
        "event_date": e.event_date.isoformat(),
        "event_time": e.event_time,
        "price": float(e.price),
        "capacity": e.capacity,
        "is_active": bool(e.is_active),
    }


def attendee_to_dict(a: Attendee) -> dict:
    return {
        "id": a.id,
        "name": a.name,
        "email": a.email,
        "phone": a.phone,
        "code": a.code,
        "event_id": a.event_id,
        "checked_in": bool(a.checked_in),
        "is_primary": a.payment_session_id is not None,
        "order_id": a.order_id,
        "seat": a.seat,
        "created_at": to_iso(a.created_at),
    }
