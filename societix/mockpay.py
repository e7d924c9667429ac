from abc import ABC, abstractmethod
from typing import Any, Optional, Tuple, TypedDict
from fastapi import HTTPException
import os
import uuid
import hmac
import hashlib
import base64
import json
import time
from .model.purchase import CheckoutSession, PurchaseIntent
from .helpers import now_ts

MOCK_SECRET = os.environ.get("MOCK_SECRET", "supersecret")
MOCK_SIGNATURE_HEADER = "x-mockpay-signature"


# ----------------------------
# Payment Adapter Interface
# ----------------------------
class CreateSessionResult(TypedDict):
    payment_session_id: str
    redirect_url: str


class PaymentAdapter(ABC):
    name = "abstract"

    @abstractmethod
    async def create_session(
            self, store: Any, intent: PurchaseIntent, amount: int,
            currency: str, event_name: str,
    ) -> CreateSessionResult: ...

    # None if the provider doesn't know the session
    @abstractmethod
    async def retrieve_session(
            self, store: Any, psid: str
    ) -> Optional[CheckoutSession]: ...

    @abstractmethod
    def verify_webhook(self, payload: bytes, headers: dict) -> dict: ...

    # "succeeded" | "failed" | "canceled" | "ignored"
    @abstractmethod
    def event_kind(self, event: dict) -> str:
        ...

    # (payment_session_id, idempotency_key)
    @abstractmethod
    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        ...

    # session as carried by the webhook payload itself
    @abstractmethod
    def event_session(self, event: dict) -> CheckoutSession:
        ...


def sign_payload(payload: bytes, secret: str = MOCK_SECRET) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


# ----------------------------
# MockPay implementation
# ----------------------------
class MockPay(PaymentAdapter):
    """Hosted checkout stand-in: a local page with pay/fail/cancel buttons.

    Sessions live in the checkout-session store; the page posts a signed
    webhook back to us exactly the way a real provider would.
    """
    name = "mock"

    async def create_session(
            self, store: Any, intent: PurchaseIntent, amount: int,
            currency: str, event_name: str,
    ) -> CreateSessionResult:
        psid = f"mock_{uuid.uuid4().hex}"
        await store.save_payment_session(psid, {
            **intent.to_metadata(),
            "event_name": event_name,
            "amount": str(amount),
            "currency": currency,
            "status": "open",
            "created_at": str(now_ts()),
        })
        redirect_url = f"/mockpay/{psid}"
        return {"payment_session_id": psid, "redirect_url": redirect_url}

    async def retrieve_session(
            self, store: Any, psid: str
    ) -> Optional[CheckoutSession]:
        ps = await store.get_payment_session(psid)
        if not ps:
            return None
        return session_from_store(psid, ps)

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get(MOCK_SIGNATURE_HEADER)
        expected = sign_payload(payload)
        if not sig or not hmac.compare_digest(expected, sig):
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            return json.loads(payload.decode())
        except json.JSONDecodeError:
            raise HTTPException(status_code=400, detail="Invalid JSON")

    def event_kind(self, event: dict) -> str:
        kind = event.get("type", "").split(".")[-1]
        if kind in ("succeeded", "failed", "canceled"):
            return kind
        return "ignored"

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        return (
                event.get("payment_session_id", ""),
                event.get("idempotency_key")
        )

    def event_session(self, event: dict) -> CheckoutSession:
        meta = event.get("metadata") or {}
        return CheckoutSession(
            session_id=event.get("payment_session_id", ""),
            paid=self.event_kind(event) == "succeeded",
            metadata={k: str(v) for k, v in meta.items()},
            customer_email=meta.get("email"),
            amount_total=int(event.get("amount") or 0),
            currency=event.get("currency") or "gbp",
        )


def session_from_store(psid: str, ps: dict) -> CheckoutSession:
    meta = {
        k: ps.get(k, "") for k in
        ("order_id", "event_id", "name", "email", "phone", "quantity")
    }
    return CheckoutSession(
        session_id=psid,
        paid=ps.get("status") == "paid",
        metadata=meta,
        customer_email=ps.get("email") or None,
        amount_total=int(ps.get("amount") or 0),
        currency=ps.get("currency") or "gbp",
    )


def build_mock_event(psid: str, kind: str, ps: dict) -> dict:
    """Webhook body the mock provider emits for a stored session."""
    return {
        "type": f"payment.{kind}",
        "payment_session_id": psid,
        "order_id": ps["order_id"],
        "amount": int(ps["amount"]),
        "currency": ps["currency"],
        "metadata": session_from_store(psid, ps).metadata,
        "created_at": int(time.time()),
        "idempotency_key": f"evt_{uuid.uuid4().hex}",
    }
