# societix/qr.py
"""QR images of booking codes, scanned at the door."""
from __future__ import annotations
import base64
import io

import segno

SCALE = 8
BORDER = 1


def qr_png(code: str, scale: int = SCALE) -> bytes:
    buf = io.BytesIO()
    segno.make(code, error="m").save(buf, kind="png", scale=scale,
                                     border=BORDER)
    return buf.getvalue()


def qr_data_url(code: str, scale: int = SCALE) -> str:
    png = base64.b64encode(qr_png(code, scale)).decode()
    return f"data:image/png;base64,{png}"


def qr_filename(code: str) -> str:
    return f"ticket-{code}.png"
