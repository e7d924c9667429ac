# societix/ics.py
"""
iCalendar (.ics, RFC 5545) and Google Calendar links for a ticket.

Events store a date plus a free-form time range such as "18:00-21:00".
A lone start time gets a two hour slot; anything else falls back to
18:00-20:00 local time.
"""
from __future__ import annotations
import base64
import os
import re
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional, Tuple
from urllib.parse import urlencode
from zoneinfo import ZoneInfo

from .helpers import now_ts

EVENT_TZ = os.environ.get("EVENT_TZ", "Europe/London")
PRODID = "-//Societix//Event//EN"

_RANGE_RE = re.compile(
    r"^\s*(\d{1,2})[:.](\d{2})\s*(?:-|–|to)\s*(\d{1,2})[:.](\d{2})\s*$"
)
_START_RE = re.compile(r"^\s*(\d{1,2})[:.](\d{2})")


def _clock(hour: str, minute: str) -> Optional[Tuple[time, int]]:
    # (time of day, days to add); 24:00 is midnight at the end of the day
    h, m = int(hour), int(minute)
    if h == 24 and m == 0:
        return time(0, 0), 1
    if 0 <= h <= 23 and 0 <= m <= 59:
        return time(h, m), 0
    return None


def event_window(event_date: date, event_time: str,
                 tz: str = EVENT_TZ) -> Tuple[datetime, datetime]:
    """(start, end) in UTC. Never raises on a malformed time string."""
    zone = ZoneInfo(tz)
    start_t, end_t, end_days = time(18, 0), None, 0
    text = event_time or ""
    m = _RANGE_RE.match(text)
    if m:
        first = _clock(m.group(1), m.group(2))
        last = _clock(m.group(3), m.group(4))
        if first is not None and last is not None and first[1] == 0:
            start_t = first[0]
            end_t, end_days = last
    else:
        m = _START_RE.match(text)
        first = _clock(m.group(1), m.group(2)) if m else None
        if first is not None and first[1] == 0:
            start_t = first[0]

    start = datetime.combine(event_date, start_t, tzinfo=zone)
    if end_t is None:
        end = start + timedelta(hours=2)
    else:
        end = datetime.combine(event_date + timedelta(days=end_days), end_t,
                               tzinfo=zone)
        if end <= start:
            # runs past midnight
            end += timedelta(days=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def _dt(d: datetime) -> str:
    return d.astimezone(timezone.utc).strftime("%Y%m%dT%H%M%SZ")


def _esc(s: str) -> str:
    return (s.replace("\\", "\\\\").replace(";", "\\;")
            .replace(",", "\\,").replace("\n", "\\n"))


def generate_ics(*, title: str, start: datetime, end: datetime, uid: str,
                 description: str = "", location: str = "",
                 url: Optional[str] = None) -> str:
    stamp = datetime.fromtimestamp(now_ts(), tz=timezone.utc)
    lines = [
        "BEGIN:VCALENDAR",
        "VERSION:2.0",
        f"PRODID:{PRODID}",
        "CALSCALE:GREGORIAN",
        "METHOD:PUBLISH",
        "BEGIN:VEVENT",
        f"UID:{uid}",
        f"DTSTAMP:{_dt(stamp)}",
        f"DTSTART:{_dt(start)}",
        f"DTEND:{_dt(end)}",
        f"SUMMARY:{_esc(title)}",
        f"LOCATION:{_esc(location)}" if location else "",
        f"URL:{url}" if url else "",
        f"DESCRIPTION:{_esc(description)}",
        "END:VEVENT",
        "END:VCALENDAR",
    ]
    return "\r\n".join(line for line in lines if line)


def ics_base64(ics: str) -> str:
    return base64.b64encode(ics.encode("utf-8")).decode()


def google_calendar_url(*, title: str, start: datetime, end: datetime,
                        details: str = "", location: str = "") -> str:
    q = urlencode({
        "action": "TEMPLATE",
        "text": title,
        "dates": f"{_dt(start)}/{_dt(end)}",
        "details": details,
        "location": location,
    })
    return f"https://calendar.google.com/calendar/render?{q}"


def ticket_calendar(event, code: str) -> dict:
    """Calendar payload for one ticket: google link + base64 .ics."""
    start, end = event_window(event.event_date, event.event_time)
    details = f"Ticket code: {code}"
    ics = generate_ics(
        title=event.name, start=start, end=end,
        uid=f"{code}@societix", description=details,
        location=event.location,
    )
    return {
        "google_calendar_url": google_calendar_url(
            title=event.name, start=start, end=end, details=details,
            location=event.location,
        ),
        "ics": ics,
        "ics_base64": ics_base64(ics),
    }
