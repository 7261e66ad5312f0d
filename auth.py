from __future__ import annotations
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from config import settings
from errors import AuthenticationError, AuthorizationError, RateLimited

logger = structlog.get_logger(__name__)

bearer = HTTPBearer(auto_error=False)


@dataclass
class Customer:
    email: str
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def create_access_token(email: str, role: str = "customer", minutes: Optional[int] = None) -> str:
    expires = datetime.now(timezone.utc) + timedelta(minutes=minutes or settings.ACCESS_TOKEN_MINUTES)
    payload = {"sub": email.lower(), "role": role, "type": "access", "exp": expires}
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Customer:
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token")
    if payload.get("type") != "access" or not payload.get("sub"):
        raise AuthenticationError("Invalid token type")
    return Customer(email=payload["sub"], role=payload.get("role", "customer"))


async def get_current_customer(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> Customer:
    if credentials is None:
        raise AuthenticationError("Access token required")
    return decode_token(credentials.credentials)


async def get_optional_customer(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
) -> Optional[Customer]:
    """Guests get None; a bad token is still rejected."""
    if credentials is None:
        return None
    return decode_token(credentials.credentials)


async def require_admin(customer: Customer = Depends(get_current_customer)) -> Customer:
    if not customer.is_admin:
        logger.warning("admin_access_denied", email=customer.email)
        raise AuthorizationError("Admin access required")
    return customer


class RateLimiter:
    """Fixed-window request counter per client address, kept in process memory."""

    def __init__(self, requests: int, window_seconds: int):
        self.requests = requests
        self.window_seconds = window_seconds
        self._hits: dict[str, tuple[float, int]] = {}

    def hit(self, key: str, now: Optional[float] = None) -> None:
        now = time.monotonic() if now is None else now
        started, count = self._hits.get(key, (now, 0))
        if now - started >= self.window_seconds:
            started, count = now, 0
        count += 1
        self._hits[key] = (started, count)
        if count > self.requests:
            logger.warning("rate_limited", key=key)
            raise RateLimited()

    def reset(self) -> None:
        self._hits.clear()

    async def __call__(self, request: Request) -> None:
        client = request.client.host if request.client else "unknown"
        self.hit(f"{request.url.path}:{client}")


form_rate_limit = RateLimiter(settings.RATE_LIMIT_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS)
