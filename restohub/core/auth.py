"""
Session identity for RestoHub.

Reads the already-issued session JWT (Authorization header or session cookie)
and exposes the subject and role claim. Token issuance belongs to the auth
provider; create_session_token exists for tests and local tooling.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
import logging

import jwt
from fastapi import HTTPException, Request
from starlette.requests import HTTPConnection

from restohub.core.config import settings


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionIdentity:
    """Authenticated caller as seen by the subscription layer."""
    subject: str
    role: Optional[str] = None
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_session_token(request: HTTPConnection) -> Optional[str]:
    """Bearer token first, then the configured session cookies."""
    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[7:].strip()
        if token:
            return token

    for cookie_name in settings.session_cookie_names():
        token = request.cookies.get(cookie_name)
        if token:
            return token
    return None


def decode_session_token(token: str, secret: Optional[str] = None) -> Optional[dict]:
    """
    Verify a session JWT and return its claims.

    Returns None for invalid, expired or unverifiable tokens instead of raising;
    callers decide whether a missing identity means 401 or a login redirect.
    """
    key = secret or settings.SESSION_SECRET
    if not key:
        logger.debug("No SESSION_SECRET configured, cannot verify session token")
        return None

    try:
        return jwt.decode(
            token,
            key,
            algorithms=["HS256"],
            options={"verify_signature": True, "verify_exp": True, "verify_aud": False},
        )
    except jwt.ExpiredSignatureError:
        logger.debug("Session token expired")
    except jwt.InvalidTokenError as e:
        logger.debug(f"Invalid session token: {e}")
    return None


def get_session_identity(request: HTTPConnection) -> Optional[SessionIdentity]:
    token = get_session_token(request)
    if not token:
        return None

    claims = decode_session_token(token)
    if not claims or not claims.get("sub"):
        return None

    return SessionIdentity(
        subject=str(claims["sub"]),
        role=claims.get("role"),
        email=claims.get("email"),
    )


def account_id_from_identity(identity: Optional[SessionIdentity]) -> Optional[int]:
    """Account ids are positive integers; anything else is not a usable session."""
    if identity is None:
        return None
    try:
        account_id = int(identity.subject)
    except (TypeError, ValueError):
        return None
    return account_id if account_id > 0 else None


def create_session_token(
    subject,
    role: Optional[str] = None,
    email: Optional[str] = None,
    expires_in: timedelta = timedelta(hours=1),
    secret: Optional[str] = None,
) -> str:
    """Mint an HS256 session token (tests and local tooling)."""
    key = secret or settings.SESSION_SECRET
    if not key:
        raise RuntimeError("SESSION_SECRET not configured")

    now = datetime.now(timezone.utc)
    claims = {
        "sub": str(subject),
        "iat": now,
        "exp": now + expires_in,
    }
    if role:
        claims["role"] = role
    if email:
        claims["email"] = email
    return jwt.encode(claims, key, algorithm="HS256")


def require_session(request: Request) -> SessionIdentity:
    """FastAPI dependency: the caller's identity, or 401."""
    identity = get_session_identity(request)
    if account_id_from_identity(identity) is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return identity
