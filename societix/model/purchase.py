# model/purchase.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, Optional

from ..errors import ValidationError
from ..helpers import is_valid_email

MAX_TICKETS_PER_ORDER = 10


@dataclass(frozen=True)
class PurchaseIntent:
    """What the buyer asked for, carried through the provider as metadata."""
    order_id: str
    event_id: str
    buyer_name: str
    buyer_email: str
    buyer_phone: Optional[str]
    quantity: int

    def to_metadata(self) -> Dict[str, str]:
        # providers only keep flat string maps
        return {
            "order_id": self.order_id,
            "event_id": self.event_id,
            "name": self.buyer_name,
            "email": self.buyer_email,
            "phone": self.buyer_phone or "",
            "quantity": str(self.quantity),
        }

    @classmethod
    def from_metadata(cls, meta: Dict[str, str]) -> "PurchaseIntent":
        meta = meta or {}
        problems = []
        for key in ("order_id", "event_id", "name", "email"):
            if not str(meta.get(key) or "").strip():
                problems.append(f"{key} is required")
        if meta.get("email") and not is_valid_email(meta.get("email")):
            problems.append("email is invalid")
        try:
            qty = int(meta.get("quantity") or "1")
        except (TypeError, ValueError):
            qty = 0
        if not 1 <= qty <= MAX_TICKETS_PER_ORDER:
            problems.append(
                f"quantity must be 1..{MAX_TICKETS_PER_ORDER}"
            )
        if problems:
            raise ValidationError("Invalid purchase metadata",
                                  details=problems)
        return cls(
            order_id=str(meta["order_id"]).strip(),
            event_id=str(meta["event_id"]).strip(),
            buyer_name=str(meta["name"]).strip(),
            buyer_email=str(meta["email"]).strip(),
            buyer_phone=(str(meta.get("phone") or "").strip() or None),
            quantity=qty,
        )


@dataclass
class CheckoutSession:
    """Provider-side view of one hosted checkout session."""
    session_id: str
    paid: bool
    metadata: Dict[str, str] = field(default_factory=dict)
    customer_email: Optional[str] = None
    amount_total: int = 0  # minor units
    currency: str = "gbp"

    def intent(self) -> PurchaseIntent:
        return PurchaseIntent.from_metadata(self.metadata)
