# model/codes.py
from __future__ import annotations
import re
import secrets

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from .db import Attendee

# no 0/O, 1/I: people type these at the door
CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
CODE_LENGTH = 8
CODE_PREFIX = "SS-"

_CODE_RE = re.compile(
    "^" + re.escape(CODE_PREFIX) + f"[{CODE_ALPHABET}]{{{CODE_LENGTH}}}$"
)


def random_code() -> str:
    body = "".join(secrets.choice(CODE_ALPHABET) for _ in range(CODE_LENGTH))
    return f"{CODE_PREFIX}{body}"


def is_booking_code(value: str) -> bool:
    return _CODE_RE.match(value or "") is not None


def normalize_code(value: str) -> str:
    return (value or "").strip().upper()


async def code_exists(db: AsyncSession, code: str) -> bool:
    async with db.begin():
        found = await db.scalar(
            select(Attendee.id).where(Attendee.code == code).limit(1)
        )
    return found is not None


async def next_code(db: AsyncSession) -> str:
    # The UNIQUE(code) constraint still decides: a concurrent generator may
    # draw the same value between this lookup and the insert.
    while True:
        code = random_code()
        if not await code_exists(db, code):
            return code
