#!/usr/bin/env python3
"""
Societix load client (async)

Plays many buyers against a running server (MockPay only). Each buyer:
  1) POST /api/checkout/session
  2) POST /mockpay/{psid}/emit with succeeded, failed or canceled
  3) for paid sessions, polls /api/checkout/success like the success page

The report answers two questions: did every paid buyer get confirmed, and
was any booking code issued twice.

Usage:
  societix-load --base http://localhost:8000 --event-id <id> \
      --total 200 --concurrency 50 --max-qty 3
"""
from __future__ import annotations
import argparse
import asyncio
import random
import statistics
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import List, Optional

import httpx

from .poller import poll_checkout_success


@dataclass
class Buyer:
    qty: int
    # CONFIRMED | FAILED | NOT_CONFIRMED | CANCELED | SOLD_OUT | ERROR
    outcome: str = "ERROR"
    seconds: float = 0.0  # checkout to confirmation
    codes: List[str] = field(default_factory=list)
    error: Optional[str] = None


def pick_kind(fail_rate: float, cancel_rate: float) -> str:
    rnd = random.random()
    if rnd < fail_rate:
        return "failed"
    if rnd < fail_rate + cancel_rate:
        return "canceled"
    return "succeeded"


async def buy(client: httpx.AsyncClient, base: str, event_id: str,
              qty: int, kind: str, max_tries: int) -> Buyer:
    b = Buyer(qty=qty)
    who = f"buyer{random.randrange(10**8):08d}"
    t0 = time.perf_counter()

    resp = await client.post(f"{base}/api/checkout/session", json={
        "name": who, "email": f"{who}@example.com",
        "quantity": qty, "event_id": event_id,
    })
    if resp.status_code == 409:
        b.outcome = "SOLD_OUT"
        return b
    resp.raise_for_status()
    psid = resp.json()["session_id"]

    resp = await client.post(f"{base}/mockpay/{psid}/emit",
                             data={"t": kind}, follow_redirects=False)
    # 303 on success
    if resp.status_code >= 400:
        resp.raise_for_status()
    if kind != "succeeded":
        b.outcome = kind.upper()
        return b

    polled = await poll_checkout_success(client, base, psid,
                                         max_tries=max_tries)
    b.seconds = time.perf_counter() - t0
    if polled.confirmed:
        b.outcome = "CONFIRMED"
        b.codes = [a["code"] for a in polled.data.get("attendees", [])]
    else:
        b.outcome = "NOT_CONFIRMED" if polled.exhausted else "FAILED"
        b.error = polled.error
    return b


def report(buyers: List[Buyer], wall: float) -> str:
    outcomes = Counter(b.outcome for b in buyers)
    codes = [c for b in buyers for c in b.codes]
    paid = [b for b in buyers if b.outcome == "CONFIRMED"]
    short = sum(1 for b in paid if len(b.codes) != b.qty)
    lat = sorted(b.seconds for b in paid)

    lines = ["", "=== Load Summary ==="]
    lines.append("   ".join(f"{k}: {outcomes[k]}" for k in sorted(outcomes)))
    lines.append(f"Tickets issued: {len(codes)}   "
                 f"duplicate codes: {len(codes) - len(set(codes))}   "
                 f"orders with missing tickets: {short}")
    if len(lat) >= 2:
        q = statistics.quantiles(lat, n=100)
        lines.append(f"Checkout to confirmed: avg {statistics.mean(lat):.3f}s"
                     f"   p50 {q[49]:.3f}s   p90 {q[89]:.3f}s"
                     f"   p99 {q[98]:.3f}s")
    lines.append(f"Wall time: {wall:.3f}s   "
                 f"Throughput: {len(buyers) / wall:.1f} orders/s")
    errors = Counter(b.error for b in buyers if b.error)
    for err, n in errors.most_common(5):
        lines.append(f"  {n} x {err}")
    return "\n".join(lines)


async def run_load(args: argparse.Namespace) -> List[Buyer]:
    sem = asyncio.Semaphore(args.concurrency)
    limits = httpx.Limits(max_connections=args.concurrency,
                          max_keepalive_connections=args.concurrency)

    async with httpx.AsyncClient(
            limits=limits, http2=args.http2, timeout=30.0,
            headers={"User-Agent": "SocietixLoad/1.0"}) as client:

        async def one() -> Buyer:
            async with sem:
                qty = random.randint(1, args.max_qty)
                kind = pick_kind(args.fail_rate, args.cancel_rate)
                try:
                    return await buy(client, args.base, args.event_id, qty,
                                     kind, args.max_tries)
                except (httpx.HTTPError, KeyError, ValueError) as e:
                    return Buyer(qty=qty, error=f"{type(e).__name__}: {e}")

        return await asyncio.gather(*(one() for _ in range(args.total)))


def main():
    ap = argparse.ArgumentParser(description="Societix load client")
    ap.add_argument("--base", default="http://localhost:8000")
    ap.add_argument("--event-id", required=True)
    ap.add_argument("--total", type=int, default=100)
    ap.add_argument("--concurrency", type=int, default=20)
    ap.add_argument("--max-qty", type=int, default=1,
                    help="tickets per order drawn from 1..max-qty (<= 10)")
    ap.add_argument("--fail-rate", type=float, default=0.0)
    ap.add_argument("--cancel-rate", type=float, default=0.0)
    ap.add_argument("--max-tries", type=int, default=10,
                    help="success poll attempts per order")
    ap.add_argument("--http2", action="store_true")
    args = ap.parse_args()
    args.base = args.base.rstrip("/")
    args.max_qty = max(1, min(args.max_qty, 10))

    t0 = time.perf_counter()
    buyers = asyncio.run(run_load(args))
    print(report(buyers, time.perf_counter() - t0))


if __name__ == "__main__":
    main()
