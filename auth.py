import logging
import threading
import time
from collections import deque
from datetime import datetime, timedelta, UTC

from fastapi import Depends, Request
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.hash import bcrypt

import config
from errors import ForbiddenError, InvalidTokenError, RateLimitedError, UnauthorizedError
from models import Claims, User

logger = logging.getLogger(__name__)

# OAuth2 scheme; missing tokens are reported by get_current_user itself
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def hash_password(password: str) -> str:
    """Hash a password with bcrypt."""
    return bcrypt.using(rounds=config.BCRYPT_ROUNDS).hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    """Compare a password against a bcrypt hash. Malformed hashes never match."""
    try:
        return bcrypt.verify(password, password_hash)
    except ValueError:
        return False


def create_access_token(user: User) -> str:
    """Create a JWT access token carrying the user's identity and role."""
    now = datetime.now(UTC)
    to_encode = {
        "sub": str(user.id),
        "id": user.id,
        "username": user.username,
        "email": user.email,
        "role": user.role,
        "iat": now,
        "exp": now + timedelta(hours=config.ACCESS_TOKEN_EXPIRE_HOURS),
    }
    return jwt.encode(to_encode, config.SECRET_KEY, algorithm=config.ALGORITHM)


def decode_access_token(token: str) -> Claims:
    """Validate a token and return its claims."""
    try:
        payload = jwt.decode(token, config.SECRET_KEY, algorithms=[config.ALGORITHM])
        return Claims(
            id=int(payload["id"]),
            username=payload["username"],
            email=payload["email"],
            role=payload["role"],
            expires_at=datetime.fromtimestamp(payload["exp"], UTC),
        )
    except (JWTError, KeyError, TypeError, ValueError):
        raise InvalidTokenError()


async def get_current_user(token: str | None = Depends(oauth2_scheme)) -> Claims:
    """Retrieve the claims of the caller from the bearer token."""
    if not token:
        raise UnauthorizedError("Token de acceso requerido")
    return decode_access_token(token)


async def require_admin(claims: Claims = Depends(get_current_user)) -> Claims:
    if not claims.is_admin:
        raise ForbiddenError("Permisos de administrador requeridos")
    return claims


class LoginRateLimiter:
    """Sliding-window limiter keyed by client address.

    Every attempt counts, successful or not.
    """

    def __init__(self, max_attempts: int = config.LOGIN_RATE_LIMIT, window_seconds: int = config.LOGIN_RATE_WINDOW_SECONDS):
        self.max_attempts = max_attempts
        self.window_seconds = window_seconds
        self._attempts: dict[str, deque[float]] = {}
        self._lock = threading.Lock()
        self._last_sweep = time.monotonic()

    def _sweep(self, cutoff: float):
        """Forget clients whose attempts have all left the window."""
        stale = [key for key, attempts in self._attempts.items() if not attempts or attempts[-1] <= cutoff]
        for key in stale:
            del self._attempts[key]

    def hit(self, key: str) -> tuple[bool, int]:
        """Record an attempt. Returns (allowed, seconds_until_reset)."""
        now = time.monotonic()
        cutoff = now - self.window_seconds
        with self._lock:
            if now - self._last_sweep >= self.window_seconds:
                self._sweep(cutoff)
                self._last_sweep = now
            attempts = self._attempts.setdefault(key, deque())
            while attempts and attempts[0] <= cutoff:
                attempts.popleft()
            if len(attempts) >= self.max_attempts:
                reset = attempts[0] + self.window_seconds - now
                return False, max(1, int(reset) + 1)
            attempts.append(now)
            return True, self.window_seconds

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._attempts)

    def reset(self, key: str | None = None):
        """Clear limiter state. If key is None, clear all."""
        with self._lock:
            if key is None:
                self._attempts.clear()
            else:
                self._attempts.pop(key, None)


login_limiter = LoginRateLimiter()


def login_rate_limit(request: Request):
    """Reject the request once the caller has used up its login attempts."""
    key = request.client.host if request.client else "unknown"
    allowed, retry_after = login_limiter.hit(key)
    if not allowed:
        logger.warning(f"Login rate limit exceeded for {key}")
        raise RateLimitedError(retry_after)
