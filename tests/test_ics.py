import base64
from datetime import date, datetime, timezone
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

from societix.ics import (
    event_window, generate_ics, google_calendar_url, ticket_calendar,
)


def _utc(*args):
    return datetime(*args, tzinfo=timezone.utc)


def test_window_in_winter():
    start, end = event_window(date(2030, 1, 15), "18:00-21:00")
    assert (start, end) == (_utc(2030, 1, 15, 18), _utc(2030, 1, 15, 21))


def test_window_in_summer_time():
    start, end = event_window(date(2030, 7, 15), "18:00-21:00")
    assert (start, end) == (_utc(2030, 7, 15, 17), _utc(2030, 7, 15, 20))


def test_window_variants():
    # lone start time -> two hours
    start, end = event_window(date(2030, 1, 15), "19:30")
    assert (start, end) == (_utc(2030, 1, 15, 19, 30),
                            _utc(2030, 1, 15, 21, 30))
    # past midnight
    start, end = event_window(date(2030, 1, 15), "22:00 - 02:00")
    assert end == _utc(2030, 1, 16, 2)
    # unreadable -> evening default
    start, end = event_window(date(2030, 1, 15), "evening, TBC")
    assert (start, end) == (_utc(2030, 1, 15, 18), _utc(2030, 1, 15, 20))


def test_generate_ics():
    ics = generate_ics(
        title="Spring Ball; formal", start=_utc(2030, 1, 15, 18),
        end=_utc(2030, 1, 15, 21), uid="SS-ABCD2345@societix",
        description="Ticket code: SS-ABCD2345", location="Great Hall, UK",
    )
    lines = ics.split("\r\n")
    assert lines[0] == "BEGIN:VCALENDAR"
    assert lines[-1] == "END:VCALENDAR"
    assert "DTSTART:20300115T180000Z" in lines
    assert "DTEND:20300115T210000Z" in lines
    assert "SUMMARY:Spring Ball\\; formal" in lines
    assert "LOCATION:Great Hall\\, UK" in lines
    assert "UID:SS-ABCD2345@societix" in lines


def test_google_calendar_url():
    url = google_calendar_url(title="Spring Ball",
                              start=_utc(2030, 1, 15, 18),
                              end=_utc(2030, 1, 15, 21),
                              location="Great Hall")
    q = parse_qs(urlparse(url).query)
    assert q["action"] == ["TEMPLATE"]
    assert q["text"] == ["Spring Ball"]
    assert q["dates"] == ["20300115T180000Z/20300115T210000Z"]


def test_ticket_calendar():
    event = SimpleNamespace(name="Spring Ball", location="Great Hall",
                            event_date=date(2030, 1, 15),
                            event_time="18:00-21:00")
    cal = ticket_calendar(event, "SS-ABCD2345")
    assert base64.b64decode(cal["ics_base64"]).decode() == cal["ics"]
    assert "Ticket code: SS-ABCD2345" in cal["ics"]
    assert "SS-ABCD2345" in cal["google_calendar_url"]


def test_window_ending_at_midnight():
    start, end = event_window(date(2030, 1, 15), "20:00-24:00")
    assert (start, end) == (_utc(2030, 1, 15, 20), _utc(2030, 1, 16, 0))


def test_window_out_of_range_times_fall_back():
    evening = (_utc(2030, 1, 15, 18), _utc(2030, 1, 15, 20))
    for text in ("25:00-26:00", "19:00-19:75", "24:00-02:00", "24:00",
                 "99:99", "", None):
        assert event_window(date(2030, 1, 15), text) == evening, text


def test_ticket_calendar_with_midnight_finish():
    event = SimpleNamespace(name="Spring Ball", location="Great Hall",
                            event_date=date(2030, 1, 15),
                            event_time="20:00-24:00")
    cal = ticket_calendar(event, "SS-ABCD2345")
    assert "DTEND:20300116T000000Z" in cal["ics"]
