from societix.model import codes, reconcile
from societix.model.codes import (
    CODE_ALPHABET, CODE_PREFIX, is_booking_code, next_code, normalize_code,
    random_code,
)


def test_random_code_shape():
    for _ in range(200):
        code = random_code()
        assert code.startswith(CODE_PREFIX)
        assert len(code) == len(CODE_PREFIX) + 8
        assert is_booking_code(code)


def test_alphabet_has_no_lookalikes():
    assert len(CODE_ALPHABET) == 32
    for ch in "01OI":
        assert ch not in CODE_ALPHABET


def test_is_booking_code_rejects_other_shapes():
    assert not is_booking_code("")
    assert not is_booking_code("SS-1234567")
    assert not is_booking_code("SS-ABCDEFGH1")
    assert not is_booking_code("SS-ABCDEF0H")  # zero
    assert not is_booking_code("XX-ABCDEFGH")
    assert not is_booking_code("ss-abcdefgh")


def test_normalize_code():
    assert normalize_code("  ss-abcd2345 ") == "SS-ABCD2345"
    assert normalize_code(None) == ""


async def test_next_code_skips_codes_in_use(
        session, make_event, paid_session, monkeypatch):
    event = await make_event()
    result = await reconcile.reconcile_purchase(
        session, paid_session(event.id)
    )
    taken = result.attendees[0].code

    draws = iter([taken, taken, "SS-ZZZZ2222"])
    monkeypatch.setattr(codes, "random_code", lambda: next(draws))
    assert await next_code(session) == "SS-ZZZZ2222"


async def test_codes_unique_across_purchases(
        session, make_event, paid_session):
    event = await make_event(capacity=50)
    seen = []
    for _ in range(5):
        result = await reconcile.reconcile_purchase(
            session, paid_session(event.id, quantity=4)
        )
        seen.extend(a.code for a in result.attendees)
    assert len(seen) == 20
    assert len(set(seen)) == 20
