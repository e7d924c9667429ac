import random

from societix.load_client import Buyer, buy, pick_kind, report


async def test_buy_confirms_through_the_app(client, make_event):
    event = await make_event()
    b = await buy(client, "http://testserver", event.id, qty=2,
                  kind="succeeded", max_tries=3)
    assert b.outcome == "CONFIRMED"
    assert len(b.codes) == 2


async def test_buy_canceled_and_sold_out(client, make_event):
    event = await make_event(capacity=1)
    b = await buy(client, "http://testserver", event.id, qty=1,
                  kind="canceled", max_tries=3)
    assert b.outcome == "CANCELED"

    b = await buy(client, "http://testserver", event.id, qty=2,
                  kind="succeeded", max_tries=3)
    assert b.outcome == "SOLD_OUT"


def test_pick_kind():
    random.seed(7)
    assert {pick_kind(0.0, 0.0) for _ in range(20)} == {"succeeded"}
    assert {pick_kind(1.0, 0.0) for _ in range(20)} == {"failed"}
    assert {pick_kind(0.0, 1.0) for _ in range(20)} == {"canceled"}


def test_report_flags_duplicates_and_short_orders():
    buyers = [
        Buyer(qty=2, outcome="CONFIRMED", seconds=0.2,
              codes=["SS-A", "SS-B"]),
        Buyer(qty=2, outcome="CONFIRMED", seconds=0.4, codes=["SS-B"]),
        Buyer(qty=1, outcome="NOT_CONFIRMED", error="not_confirmed"),
        Buyer(qty=1, outcome="SOLD_OUT"),
    ]
    text = report(buyers, wall=2.0)
    assert "CONFIRMED: 2" in text
    assert "NOT_CONFIRMED: 1" in text
    assert "duplicate codes: 1" in text
    assert "orders with missing tickets: 1" in text
    assert "Throughput: 2.0 orders/s" in text
    assert "1 x not_confirmed" in text
