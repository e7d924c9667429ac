# societix/stripepay.py
"""Stripe Checkout behind the same adapter interface as MockPay."""
from __future__ import annotations
import asyncio
import os
import time
from typing import Any, Optional, Tuple

import stripe
from fastapi import HTTPException

from .errors import PaymentProviderError
from .log import logger
from .mockpay import CreateSessionResult, PaymentAdapter
from .model.purchase import CheckoutSession, PurchaseIntent

STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY", "")
STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
APP_URL = os.environ.get("APP_URL", "http://localhost:8000")
STRIPE_SESSION_TTL_SECONDS = 30 * 60

_KINDS = {
    "checkout.session.completed": "succeeded",
    "checkout.session.async_payment_succeeded": "succeeded",
    "checkout.session.async_payment_failed": "failed",
    "checkout.session.expired": "canceled",
}


def _get(obj: Any, key: str, default=None):
    # StripeObject and plain dicts (tests, replays) both index by key
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, AttributeError):
        return getattr(obj, key, default)
    return default if value is None else value


def _plain(obj: Any) -> dict:
    if hasattr(obj, "to_dict"):
        return obj.to_dict()
    return dict(obj or {})


class StripePay(PaymentAdapter):
    name = "stripe"

    def __init__(self, stripe_client=stripe) -> None:
        self._stripe = stripe_client
        if STRIPE_SECRET_KEY:
            self._stripe.api_key = STRIPE_SECRET_KEY

    async def create_session(
            self, store: Any, intent: PurchaseIntent, amount: int,
            currency: str, event_name: str,
    ) -> CreateSessionResult:
        unit_amount = amount // intent.quantity
        try:
            session = await asyncio.to_thread(
                self._stripe.checkout.Session.create,
                mode="payment",
                payment_method_types=["card"],
                customer_email=intent.buyer_email,
                success_url=(
                    f"{APP_URL}/checkout/success"
                    "?session_id={CHECKOUT_SESSION_ID}"
                ),
                cancel_url=f"{APP_URL}/?cancelled=true",
                line_items=[{
                    "price_data": {
                        "currency": currency,
                        "unit_amount": unit_amount,
                        "product_data": {"name": event_name},
                    },
                    "quantity": intent.quantity,
                }],
                metadata=intent.to_metadata(),
                expires_at=int(time.time()) + STRIPE_SESSION_TTL_SECONDS,
            )
        except stripe.StripeError as e:
            logger.bind(email=intent.buyer_email, error=str(e)).error(
                "Failed to create checkout session"
            )
            raise PaymentProviderError("Payment processing error") from e

        # keep the pending index for the admin view
        await store.save_payment_session(session.id, {
            **intent.to_metadata(),
            "amount": str(amount),
            "currency": currency,
            "status": "open",
            "created_at": str(time.time()),
        })
        logger.bind(session_id=session.id).info("Checkout session created")
        return {"payment_session_id": session.id, "redirect_url": session.url}

    async def retrieve_session(
            self, store: Any, psid: str
    ) -> Optional[CheckoutSession]:
        try:
            s = await asyncio.to_thread(
                self._stripe.checkout.Session.retrieve, psid
            )
        except stripe.InvalidRequestError:
            return None
        except stripe.StripeError as e:
            logger.bind(session_id=psid, error=str(e)).error(
                "Failed to retrieve session"
            )
            raise PaymentProviderError("Payment provider unreachable") from e
        return self._to_session(s)

    def verify_webhook(self, payload: bytes, headers: dict) -> dict:
        sig = headers.get("stripe-signature")
        if not sig or not STRIPE_WEBHOOK_SECRET:
            raise HTTPException(status_code=400, detail="Invalid signature")
        try:
            return self._stripe.Webhook.construct_event(
                payload, sig, STRIPE_WEBHOOK_SECRET
            )
        except stripe.SignatureVerificationError:
            raise HTTPException(status_code=400, detail="Invalid signature")
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid JSON")

    def event_kind(self, event: dict) -> str:
        kind = _KINDS.get(_get(event, "type", ""), "ignored")
        if kind == "succeeded":
            obj = _get(_get(event, "data", {}), "object", {})
            # card payments complete immediately, delayed methods later
            if _get(obj, "payment_status") != "paid":
                return "ignored"
        return kind

    def event_ids(self, event: dict) -> Tuple[str, Optional[str]]:
        obj = _get(_get(event, "data", {}), "object", {})
        return _get(obj, "id", ""), _get(event, "id")

    def event_session(self, event: dict) -> CheckoutSession:
        return self._to_session(_get(_get(event, "data", {}), "object", {}))

    def _to_session(self, s: Any) -> CheckoutSession:
        details = _get(s, "customer_details") or {}
        meta = _plain(_get(s, "metadata") or {})
        return CheckoutSession(
            session_id=_get(s, "id", ""),
            paid=_get(s, "payment_status") == "paid",
            metadata={k: str(v) for k, v in meta.items()},
            customer_email=_get(details, "email") or meta.get("email"),
            amount_total=int(_get(s, "amount_total") or 0),
            currency=_get(s, "currency") or "gbp",
        )
