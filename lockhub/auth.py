"""Session authentication for the lockhub HTTP API.

Each bearer token names one control session (``sub``); that id is what the
arbitration store records in ``triggered_by``.  Tokens are minted with
:func:`create_token` (``python -m lockhub token <session>``).
"""

from __future__ import annotations

import os
import time

import jwt
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

# ── Configuration ─────────────────────────────────────────────────
JWT_SECRET = os.environ.get("LOCKHUB_JWT_SECRET", "lockhub-change-me")
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_SECONDS = int(os.environ.get("LOCKHUB_JWT_EXPIRY", "86400"))  # 24h

_bearer = HTTPBearer(auto_error=False)


# ── JWT helpers ───────────────────────────────────────────────────

def create_token(session_id: str, expires_in: int | None = None) -> str:
    if not session_id or not session_id.strip():
        raise ValueError("session id must not be empty")
    now = int(time.time())
    payload = {
        "sub": session_id.strip(),
        "iat": now,
        "exp": now + (JWT_EXPIRY_SECONDS if expires_in is None else expires_in),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


# ── FastAPI dependency ────────────────────────────────────────────

async def require_session(
    creds: HTTPAuthorizationCredentials | None = Depends(_bearer),
) -> str:
    """Dependency that returns the caller's session id from a valid JWT."""
    if creds is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    payload = decode_token(creds.credentials)
    session_id = payload.get("sub")
    if not session_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return session_id
