import base64
import json
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest

from societix.mailer import (
    LogMailer, ResendMailer, TicketMailer, deliver_tickets, format_amount,
    render_ticket_email, ticket_filename,
)

EVENT = SimpleNamespace(
    id="ev1", name="Spring Ball", location="Great Hall",
    event_date=date(2030, 5, 1), event_time="19:00-23:00",
    price=Decimal("12.50"),
)
TICKETS = [
    SimpleNamespace(name="Ada Lovelace", code="SS-ABCD2345",
                    email="ada@example.com"),
    SimpleNamespace(name="Ada Lovelace (Guest 1)", code="SS-EFGH6789",
                    email="ada@example.com"),
]


def test_format_amount():
    assert format_amount(3750) == "£37.50"
    assert format_amount(500, "usd") == "$5.00"


def test_ticket_filename():
    assert ticket_filename("Spring Ball: 2030!") == "Spring-Ball-2030.ics"


def test_render_lists_every_ticket():
    html = render_ticket_email(attendee=TICKETS[0], event=EVENT,
                               amount_paid=2500, tickets=TICKETS)
    assert "SS-ABCD2345" in html
    assert "SS-EFGH6789" in html
    assert "Ada Lovelace (Guest 1)" in html
    assert "£25.00" in html
    assert "Wednesday 01 May 2030" in html


async def test_resend_mailer_posts_with_attachment():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"id": "email_1"})

    async with httpx.AsyncClient(
            transport=httpx.MockTransport(handler)) as http:
        mailer = ResendMailer(http, api_key="re_test",
                              sender="Tickets <t@example.com>")
        await mailer.send_ticket_email(
            to_address="ada@example.com", attendee=TICKETS[0], event=EVENT,
            amount_paid=2500, tickets=TICKETS,
        )

    assert seen[0].headers["authorization"] == "Bearer re_test"
    body = json.loads(seen[0].content)
    assert body["to"] == ["ada@example.com"]
    assert body["subject"] == "Spring Ball - Ticket Confirmation"
    assert [a["filename"] for a in body["attachments"]] == [
        "Spring-Ball.ics", "ticket-SS-ABCD2345.png",
        "ticket-SS-EFGH6789.png",
    ]
    png = base64.b64decode(body["attachments"][1]["content"])
    assert png.startswith(b"\x89PNG")


async def test_resend_mailer_raises_on_api_error():
    async with httpx.AsyncClient(transport=httpx.MockTransport(
            lambda r: httpx.Response(422, json={"message": "bad"}))) as http:
        mailer = ResendMailer(http, api_key="re_test")
        with pytest.raises(httpx.HTTPStatusError):
            await mailer.send_ticket_email(
                to_address="ada@example.com", attendee=TICKETS[0],
                event=EVENT, amount_paid=2500,
            )


async def test_deliver_tickets_swallows_failures():
    class Broken(TicketMailer):
        async def send_ticket_email(self, **kw):
            raise RuntimeError("boom")

    await deliver_tickets(Broken(), to_address="ada@example.com",
                          tickets=TICKETS, event=EVENT, amount_paid=2500)


async def test_deliver_tickets_with_log_mailer():
    mailer = LogMailer()
    await deliver_tickets(mailer, to_address="ada@example.com",
                          tickets=TICKETS, event=EVENT, amount_paid=2500)
    assert mailer.sent == [{
        "to": "ada@example.com", "codes": ["SS-ABCD2345", "SS-EFGH6789"],
        "event_id": "ev1", "amount": 2500,
    }]
