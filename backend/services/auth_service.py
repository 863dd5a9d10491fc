"""
Bearer-token identity.

Tokens are HS256 JWTs carrying `sub` (user id) and `email`.  The account's
plan comes from the `profiles` table, so a valid token for a user with no
profile is a 404 rather than a 401.
"""
import logging
import os
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import aiosqlite
from fastapi import Depends, HTTPException, Request
from jose import JWTError, jwt

from db.database import get_db

logger = logging.getLogger("bizznex.auth")

SECRET_KEY = os.environ.get("JWT_SECRET", "dev-secret-key-change-in-production")
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_HOURS = 24


@dataclass
class CurrentUser:
    user_id: str
    email: Optional[str]
    plan: str


def create_access_token(user_id: str, email: str, expires_delta: Optional[timedelta] = None) -> str:
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=ACCESS_TOKEN_EXPIRE_HOURS))
    return jwt.encode({"sub": user_id, "email": email, "exp": expire}, SECRET_KEY, algorithm=ALGORITHM)


def verify_access_token(token: str) -> Optional[dict]:
    """Return the token claims, or None if the token is invalid or expired."""
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        return None
    if not payload.get("sub"):
        return None
    return payload


async def get_current_user(
    request: Request,
    db: aiosqlite.Connection = Depends(get_db),
) -> CurrentUser:
    auth = request.headers.get("authorization", "")
    if not auth.startswith("Bearer "):
        raise HTTPException(status_code=401, detail="Unauthorized. Please sign in.")

    claims = verify_access_token(auth.split(" ", 1)[1].strip())
    if claims is None:
        logger.warning("Rejected bearer token on %s", request.url.path)
        raise HTTPException(status_code=401, detail="Invalid authentication token")

    async with db.execute(
        "SELECT user_id, email, plan FROM profiles WHERE user_id = ?", (claims["sub"],)
    ) as cur:
        row = await cur.fetchone()
    if not row:
        logger.error("User profile not found for %s", claims["sub"])
        raise HTTPException(status_code=404, detail="User profile not found")

    return CurrentUser(
        user_id=row["user_id"],
        email=row["email"] or claims.get("email"),
        plan=row["plan"] or "starter",
    )
