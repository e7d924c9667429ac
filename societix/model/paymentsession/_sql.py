from __future__ import annotations
from typing import Optional, Dict, Any, List, Tuple
from sqlalchemy import text, bindparam
from sqlalchemy.ext.asyncio import AsyncSession, AsyncConnection
import time
from typing import Callable, AsyncContextManager


# ------------------------------------------------------------------------------
# DDL (idempotent)
# ------------------------------------------------------------------------------
SQL_CREATE_CHECKOUT_SESSIONS = r"""
-- checkout sessions this service created (buyer form data + amount)
CREATE TABLE IF NOT EXISTS checkout_sessions (
  psid         TEXT PRIMARY KEY,
  order_id     TEXT NOT NULL,
  event_id     TEXT NOT NULL,
  name         TEXT NOT NULL,
  email        TEXT NOT NULL,
  phone        TEXT,
  qty          INTEGER NOT NULL,
  amount       INTEGER NOT NULL,
  currency     TEXT NOT NULL,
  status       TEXT NOT NULL DEFAULT 'open',
  created_at   DOUBLE PRECISION NOT NULL,
  expires_at   DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_CHECKOUT_SESSIONS_PENDING = r"""
-- live "pending" index for the admin view: sessions not yet reconciled
CREATE TABLE IF NOT EXISTS checkout_sessions_pending (
  psid       TEXT PRIMARY KEY,
  created_at DOUBLE PRECISION NOT NULL
);
"""

SQL_CREATE_IDX_CS_CREATED_AT = r"""
CREATE INDEX IF NOT EXISTS idx_checkout_sessions_created_at
  ON checkout_sessions (created_at DESC);
"""


async def create_schema(db_or_conn: AsyncSession | AsyncConnection):
    # get an execute handle that works for both session and connection
    exec_ = db_or_conn.execute
    await exec_(text(SQL_CREATE_CHECKOUT_SESSIONS))
    await exec_(text(SQL_CREATE_CHECKOUT_SESSIONS_PENDING))
    await exec_(text(SQL_CREATE_IDX_CS_CREATED_AT))


def _as_str_map(row: Dict[str, Any]) -> Dict[str, str]:
    # same shape as the redis backend hands out
    return {
        k: ("" if v is None else str(v)) for k, v in row.items()
    }


class PaymentSessionStore:
    def __init__(
        self, *, db: AsyncSession, ttl_seconds: int,
        gated: Callable[[], AsyncContextManager[None]]
    ) -> None:
        self.db = db
        self.ttl = ttl_seconds
        self.gated = gated

    async def save_payment_session(
            self, psid: str, mapping: Dict[str, Any]
    ) -> None:
        m = mapping.copy()
        created = float(m.get("created_at") or time.time())
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(text("""
                  INSERT INTO checkout_sessions(
                    psid, order_id, event_id, name, email, phone, qty,
                    amount, currency, status, created_at, expires_at
                  ) VALUES (
                    :psid, :order_id, :event_id, :name, :email, :phone,
                    :qty, :amount, :currency, :status, :created_at,
                    :expires_at
                  )
                  ON CONFLICT (psid) DO UPDATE SET
                    order_id=EXCLUDED.order_id, event_id=EXCLUDED.event_id,
                    name=EXCLUDED.name, email=EXCLUDED.email,
                    phone=EXCLUDED.phone, qty=EXCLUDED.qty,
                    amount=EXCLUDED.amount, currency=EXCLUDED.currency,
                    status=EXCLUDED.status,
                    created_at=EXCLUDED.created_at,
                    expires_at=EXCLUDED.expires_at
                """), {
                    "psid": psid,
                    "order_id": m["order_id"],
                    "event_id": m["event_id"],
                    "name": m["name"],
                    "email": m["email"],
                    "phone": m.get("phone") or None,
                    "qty": int(m["quantity"]),
                    "amount": int(m["amount"]),
                    "currency": m.get("currency") or "gbp",
                    "status": m.get("status") or "open",
                    "created_at": created,
                    "expires_at": created + self.ttl,
                })
                await self.db.execute(text("""
                  INSERT INTO checkout_sessions_pending(psid, created_at)
                  VALUES(:psid, :created_at)
                  ON CONFLICT (psid) DO UPDATE
                  SET created_at=EXCLUDED.created_at
                """), {"psid": psid, "created_at": created})

    async def get_payment_session(
            self, psid: str
    ) -> Optional[Dict[str, str]]:
        async with self.gated():
            async with self.db.begin():
                row = (await self.db.execute(text("""
                  SELECT psid, order_id, event_id, name, email, phone,
                         qty AS quantity, amount, currency, status,
                         created_at, expires_at
                  FROM checkout_sessions WHERE psid=:psid
                """), {"psid": psid})).mappings().first()
                return _as_str_map(dict(row)) if row else None

    async def set_status(self, psid: str, status: str) -> bool:
        async with self.gated():
            async with self.db.begin():
                res = await self.db.execute(text("""
                  UPDATE checkout_sessions SET status=:status
                  WHERE psid=:psid
                """), {"psid": psid, "status": status})
        return res.rowcount == 1

    async def remove_pending(self, psid: str) -> None:
        async with self.gated():
            async with self.db.begin():
                await self.db.execute(
                    text(
                        "DELETE FROM checkout_sessions_pending "
                        "WHERE psid=:psid"
                    ),
                    {"psid": psid}
                )

    async def get_recent_payment_sessions(
        self, limit: int = 200
    ) -> Tuple[int, List[Dict[str, Any]]]:
        async with self.gated():
            async with self.db.begin():
                total = (await self.db.execute(
                    text("SELECT COUNT(*) FROM checkout_sessions_pending")
                )).scalar_one()

                rows = (await self.db.execute(text("""
                    SELECT
                        p.psid,
                        h.created_at,
                        h.order_id,
                        h.event_id,
                        h.qty,
                        h.amount,
                        h.currency,
                        h.email,
                        h.status
                    FROM checkout_sessions_pending AS p
                    LEFT JOIN checkout_sessions AS h ON h.psid = p.psid
                    ORDER BY p.created_at DESC
                    LIMIT :lim
                """), {"lim": int(limit)})).mappings().all()

                now = time.time()
                items: List[Dict[str, Any]] = []
                missing: List[str] = []

                for r in rows:
                    psid = r["psid"]
                    created = r["created_at"]

                    # pending entry without a session row -> drop it
                    if created is None:
                        missing.append(psid)
                        continue

                    created = float(created)
                    items.append({
                        "psid": psid,
                        "created_at": created,
                        "age_ms": int(max(0.0, now - created) * 1000),
                        "order_id": r.get("order_id", "") or "",
                        "event_id": r.get("event_id", "") or "",
                        "qty": int(r.get("qty") or 1),
                        "email": r.get("email", "") or "",
                        "amount": int(r.get("amount") or 0),
                        "currency": r.get("currency", "gbp") or "gbp",
                        "status": (r.get("status") or "open").upper(),
                    })

                if missing:
                    stmt = text(
                        "DELETE FROM checkout_sessions_pending "
                        "WHERE psid IN :psids"
                        ).bindparams(bindparam("psids", expanding=True))
                    await self.db.execute(stmt, {"psids": tuple(missing)})

        return int(total), items
