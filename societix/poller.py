# societix/poller.py
"""
Client half of the success poll.

After the provider redirects the buyer back, the client asks
`GET /api/checkout/success` until the server confirms the tickets, reports a
hard failure, or the attempts run out. Delays grow geometrically:

    0.4s, 0.54s, 0.73s, 0.98s, 1.33s, 1.5s, 1.5s, ...

425 (not paid yet), 503 (provider or database busy) and transport errors are
retried; any other non-200 answer is final. Running out of attempts is final
too: the buyer is told to contact support with the session id.
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .log import logger

RETRY_STATUS = frozenset({425, 503})

CONFIRMED = "confirmed"
FAILED = "failed"

NOT_CONFIRMED = "not_confirmed"


@dataclass
class PollOutcome:
    state: str  # confirmed | failed
    attempts: int
    status_code: Optional[int] = None
    data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    # failed because every attempt came back "try again"
    exhausted: bool = False

    @property
    def confirmed(self) -> bool:
        return self.state == CONFIRMED


def backoff_delays(max_tries: int = 10, initial_delay: float = 0.4,
                   growth: float = 1.35, max_delay: float = 1.5):
    delay = initial_delay
    for _ in range(max(0, max_tries - 1)):
        yield delay
        delay = min(delay * growth, max_delay)


def _json(resp: httpx.Response) -> Dict[str, Any]:
    try:
        body = resp.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


async def poll_checkout_success(
        client: httpx.AsyncClient, base_url: str, session_id: str, *,
        max_tries: int = 10, initial_delay: float = 0.4,
        growth: float = 1.35, max_delay: float = 1.5,
) -> PollOutcome:
    url = f"{base_url.rstrip('/')}/api/checkout/success"
    log = logger.bind(session_id=session_id)
    delays = backoff_delays(max_tries, initial_delay, growth, max_delay)
    status_code: Optional[int] = None
    last: Optional[str] = None

    for attempt in range(1, max_tries + 1):
        try:
            resp = await client.get(url, params={"session_id": session_id})
        except httpx.TransportError as e:
            status_code, last = None, f"transport: {e}"
        else:
            status_code = resp.status_code
            body = _json(resp)
            if status_code == 200:
                return PollOutcome(CONFIRMED, attempt, status_code, body)
            if status_code not in RETRY_STATUS:
                error = body.get("error") or f"HTTP {status_code}"
                log.bind(status=status_code, error=error).warning(
                    "Checkout could not be confirmed"
                )
                return PollOutcome(FAILED, attempt, status_code, body,
                                   error)
            last = body.get("reason") or f"HTTP {status_code}"

        delay = next(delays, None)
        if delay is None:
            break
        await asyncio.sleep(delay)

    log.bind(attempts=max_tries, last=last).error(
        "Checkout not confirmed after all attempts"
    )
    return PollOutcome(FAILED, max_tries, status_code,
                       {"status": "failed", "error": NOT_CONFIRMED,
                        "reason": last},
                       NOT_CONFIRMED, exhausted=True)
