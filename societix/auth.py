# societix/auth.py
"""
Admin credentials, re-checked on every privileged request.

Accepted, in this order:
  1) Authorization: Bearer <jwt>   (issued by POST /api/admin/login)
  2) X-Admin-Password: <password>  (scanner devices)
  3) the signed session cookie set by the HTML login form
"""
from __future__ import annotations
import os
import time
from dataclasses import dataclass
from typing import Optional

import jwt
from fastapi import Request

from .errors import AuthError
from .helpers import ct_equal

ADMIN_USERNAME = os.environ.get("ADMIN_USERNAME", "admin")
ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "supasecret")
ADMIN_JWT_SECRET = os.environ.get(
    "ADMIN_JWT_SECRET",
    os.environ.get("SESSION_SECRET", "dev-secret-change-me"),
)
ADMIN_TOKEN_TTL_SECONDS = int(
    os.environ.get("ADMIN_TOKEN_TTL_SECONDS", str(7 * 24 * 3600))
)
JWT_ALGORITHM = "HS256"


@dataclass(frozen=True)
class AdminSession:
    subject: str
    # "bearer" | "password" | "cookie"
    via: str
    expires_at: Optional[int] = None


def check_password(password: str) -> bool:
    if not ADMIN_PASSWORD:
        return False
    return ct_equal((password or "").strip(), ADMIN_PASSWORD)


def issue_token(subject: str = ADMIN_USERNAME) -> dict:
    now = int(time.time())
    exp = now + ADMIN_TOKEN_TTL_SECONDS
    token = jwt.encode(
        {"sub": subject, "role": "admin", "iat": now, "exp": exp},
        ADMIN_JWT_SECRET,
        algorithm=JWT_ALGORITHM,
    )
    return {
        "token": token,
        "token_type": "bearer",
        "expires_in": ADMIN_TOKEN_TTL_SECONDS,
    }


def decode_token(token: str) -> AdminSession:
    try:
        claims = jwt.decode(token, ADMIN_JWT_SECRET,
                            algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthError("Authentication token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid authentication token")
    if claims.get("role") != "admin":
        raise AuthError("Invalid authentication token")
    return AdminSession(subject=str(claims.get("sub") or ""), via="bearer",
                        expires_at=claims.get("exp"))


def require_admin(request: Request) -> AdminSession:
    """FastAPI dependency."""
    header = request.headers.get("authorization", "")
    if header.lower().startswith("bearer "):
        return decode_token(header[7:].strip())

    password = request.headers.get("x-admin-password")
    if password is not None:
        if check_password(password):
            return AdminSession(subject=ADMIN_USERNAME, via="password")
        raise AuthError("Authentication failed")

    user = request.session.get("admin_user")
    if user:
        return AdminSession(subject=user, via="cookie")
    raise AuthError("Authentication required")
