from __future__ import annotations
from typing import Optional, Dict, Any, Tuple, List
import time
import redis.asyncio as redis


# ---- keys
def k_ps(psid: str) -> str: return f"cs:{psid}"


PENDING_INDEX = "checkout:pending"


class PaymentSessionStore:
    def __init__(self, r: redis.Redis, ttl_seconds: int) -> None:
        self.r = r
        self.ttl = ttl_seconds
        self.PENDING_INDEX = PENDING_INDEX

    async def save_payment_session(
            self, psid: str, mapping: Dict[str, Any]) -> None:
        # values must be strings for decode_responses=True
        m = {k: ("" if v is None else str(v)) for k, v in mapping.items()}
        m.setdefault("status", "open")
        created = float(m.get("created_at") or time.time())
        m["created_at"] = str(created)
        m["expires_at"] = str(created + self.ttl)
        pipe = self.r.pipeline(transaction=True)
        pipe.hset(k_ps(psid), mapping=m)
        # keep the hash well past expiry so late webhooks still find it
        pipe.expire(k_ps(psid), self.ttl + 24 * 3600)
        pipe.zadd(PENDING_INDEX, {psid: created})
        await pipe.execute()

    async def get_payment_session(self, psid: str) -> Optional[Dict[str, str]]:
        h = await self.r.hgetall(k_ps(psid))
        if not h:
            return None
        h["psid"] = psid
        return h

    async def set_status(self, psid: str, status: str) -> bool:
        if not await self.r.exists(k_ps(psid)):
            return False
        await self.r.hset(k_ps(psid), "status", status)
        return True

    async def remove_pending(self, psid: str) -> None:
        await self.r.zrem(PENDING_INDEX, psid)

    async def _list_recent_psids(
            self, limit: int = 200
    ) -> Tuple[int, List[str]]:
        total = await self.r.zcard(PENDING_INDEX)
        psids = await self.r.zrevrange(PENDING_INDEX, 0, max(0, limit - 1))
        return total, psids

    async def _get_payment_sessions(self, psids: List[str]):
        pipe = self.r.pipeline()
        for psid in psids:
            pipe.hgetall(k_ps(psid))
        return await pipe.execute()

    async def get_recent_payment_sessions(
            self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        total, psids = await self._list_recent_psids(limit=limit)
        rows = await self._get_payment_sessions(psids)

        now = time.time()
        items = []
        for psid, h in zip(psids, rows):
            # house-keeping
            if not h:
                await self.remove_pending(psid)
                continue

            try:
                created = float(h.get("created_at", "0"))
            except ValueError:
                created = 0.0
            items.append({
                "psid": psid,
                "created_at": created,
                "age_ms": int(max(0.0, now - created) * 1000),
                "order_id": h.get("order_id", ""),
                "event_id": h.get("event_id", ""),
                "qty": int(h.get("quantity", "1") or 1),
                "email": h.get("email", ""),
                "amount": int(h.get("amount", "0") or 0),
                "currency": h.get("currency", "gbp"),
                "status": h.get("status", "open").upper(),
            })
        return total, items
