from __future__ import annotations
from abc import ABC, abstractmethod
import base64
import os
import re
from typing import List, Optional

import httpx
from jinja2 import Environment, FileSystemLoader, select_autoescape

from .ics import ticket_calendar
from .log import logger
from .qr import qr_filename, qr_png
from .model.db import Attendee, Event

RESEND_API_KEY = os.environ.get("RESEND_API_KEY", "")
RESEND_API_URL = os.environ.get(
    "RESEND_API_URL", "https://api.resend.com/emails"
)
MAIL_FROM = os.environ.get(
    "MAIL_FROM", "Societix Tickets <tickets@example.com>"
)

TEMPLATE_DIR = os.path.join(os.path.dirname(__file__), "templates")
_env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html"]),
)


def format_amount(amount_minor: int, currency: str = "gbp") -> str:
    symbol = {"gbp": "£", "eur": "€", "usd": "$"}.get(currency.lower(), "")
    return f"{symbol}{amount_minor / 100:.2f}"


def render_ticket_email(*, attendee: Attendee, event: Event,
                        amount_paid: int, tickets: List[Attendee],
                        currency: str = "gbp") -> str:
    return _env.get_template("email/ticket.html").render(
        attendee=attendee,
        event=event,
        tickets=tickets,
        quantity=len(tickets),
        amount=format_amount(amount_paid, currency),
        event_date=event.event_date.strftime("%A %d %B %Y"),
    )


def ticket_filename(event_name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9]+", "-", event_name).strip("-") + ".ics"


def ticket_attachments(event: Event, tickets: List[Attendee]) -> List[dict]:
    """.ics for the event plus one QR image per ticket."""
    cal = ticket_calendar(event, tickets[0].code)
    files = [{"filename": ticket_filename(event.name),
              "content": cal["ics_base64"]}]
    for t in tickets:
        files.append({
            "filename": qr_filename(t.code),
            "content": base64.b64encode(qr_png(t.code)).decode(),
        })
    return files


# ----------------------------
# Mailer interface
# ----------------------------
class TicketMailer(ABC):
    @abstractmethod
    async def send_ticket_email(
            self, *, to_address: str, attendee: Attendee, event: Event,
            amount_paid: int, tickets: Optional[List[Attendee]] = None,
    ) -> None: ...


class LogMailer(TicketMailer):
    """Dev mailer: logs what would have been sent."""

    def __init__(self) -> None:
        self.sent: List[dict] = []

    async def send_ticket_email(
            self, *, to_address: str, attendee: Attendee, event: Event,
            amount_paid: int, tickets: Optional[List[Attendee]] = None,
    ) -> None:
        tickets = tickets or [attendee]
        codes = [t.code for t in tickets]
        self.sent.append({"to": to_address, "codes": codes,
                          "event_id": event.id, "amount": amount_paid})
        logger.bind(to=to_address, codes=codes).info(
            "Ticket email (not sent, log mailer)"
        )


class ResendMailer(TicketMailer):
    def __init__(self, http: httpx.AsyncClient,
                 api_key: str = RESEND_API_KEY,
                 sender: str = MAIL_FROM) -> None:
        self.http = http
        self.api_key = api_key
        self.sender = sender

    async def send_ticket_email(
            self, *, to_address: str, attendee: Attendee, event: Event,
            amount_paid: int, tickets: Optional[List[Attendee]] = None,
    ) -> None:
        tickets = tickets or [attendee]
        html = render_ticket_email(attendee=attendee, event=event,
                                   amount_paid=amount_paid, tickets=tickets)
        resp = await self.http.post(
            RESEND_API_URL,
            headers={"Authorization": f"Bearer {self.api_key}"},
            json={
                "from": self.sender,
                "to": [to_address],
                "subject": f"{event.name} - Ticket Confirmation",
                "html": html,
                "attachments": ticket_attachments(event, tickets),
            },
        )
        if resp.status_code >= 400:
            logger.bind(to=to_address, status=resp.status_code,
                        body=resp.text[:500]).error("Email send failed")
            resp.raise_for_status()
        logger.bind(to=to_address, code=attendee.code).info(
            "Order email sent successfully"
        )


def new_mailer(http: Optional[httpx.AsyncClient]) -> TicketMailer:
    if RESEND_API_KEY and http is not None:
        return ResendMailer(http)
    return LogMailer()


async def deliver_tickets(mailer: TicketMailer, *, to_address: str,
                          tickets: List[Attendee], event: Event,
                          amount_paid: int) -> None:
    """Background task: email failures are logged, never raised."""
    if not tickets:
        return
    try:
        await mailer.send_ticket_email(
            to_address=to_address, attendee=tickets[0], event=event,
            amount_paid=amount_paid, tickets=tickets,
        )
    except Exception as e:
        logger.bind(to=to_address, error=str(e)).error(
            "Ticket email failed"
        )
