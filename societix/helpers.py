import time
import re
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def new_id() -> str:
    return uuid.uuid4().hex


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def to_minor_units(price: Decimal | float | str, qty: int = 1) -> int:
    # 12.50 -> 1250 (per ticket) * qty
    cents = (Decimal(str(price)) * 100).quantize(
        Decimal("1"), rounding=ROUND_HALF_UP
    )
    return int(cents) * qty
