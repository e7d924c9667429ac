from datetime import date
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .helpers import is_valid_email
from .model.purchase import MAX_TICKETS_PER_ORDER


def _email(v: str) -> str:
    v = (v or "").strip()
    if not is_valid_email(v):
        raise ValueError("must be a valid email address")
    return v


class CheckoutRequest(BaseModel):
    name: str = Field(min_length=1, max_length=200)
    email: str
    phone: Optional[str] = Field(default=None, max_length=40)
    quantity: int = Field(default=1, ge=1, le=MAX_TICKETS_PER_ORDER)
    event_id: str = Field(min_length=1)

    @field_validator("name")
    @classmethod
    def _name(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("name is required")
        return v

    @field_validator("email")
    @classmethod
    def _valid_email(cls, v: str) -> str:
        return _email(v)

    @field_validator("phone")
    @classmethod
    def _phone(cls, v: Optional[str]) -> Optional[str]:
        v = (v or "").strip()
        return v or None


class LoginRequest(BaseModel):
    password: str = Field(min_length=1)


class EventCreate(BaseModel):
    name: str = Field(min_length=1)
    description: Optional[str] = None
    location: str = Field(min_length=1)
    event_date: date
    event_time: str = Field(min_length=1)
    price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    capacity: int = Field(ge=0)


class EventUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    location: Optional[str] = Field(default=None, min_length=1)
    event_date: Optional[date] = None
    event_time: Optional[str] = Field(default=None, min_length=1)
    price: Optional[Decimal] = Field(default=None, ge=0, max_digits=10,
                                     decimal_places=2)
    capacity: Optional[int] = Field(default=None, ge=0)
    is_active: Optional[bool] = None


class AttendeeUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[str] = None
    phone: Optional[str] = None
    checked_in: Optional[bool] = None

    @field_validator("email")
    @classmethod
    def _valid_email(cls, v: Optional[str]) -> Optional[str]:
        return None if v is None else _email(v)
