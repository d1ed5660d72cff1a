"""
Bearer token authentication for the API.
Tokens are issued by the external auth service; this module only resolves
them to principals and enforces roles.
"""

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

logger = logging.getLogger(__name__)

ROLES = ('admin', 'ceza', 'uye')

security = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Principal:
    """Authenticated caller."""
    user_id: str
    name: str
    role: str


class TokenRegistry:
    """Token to principal map with per-token expiry."""

    def __init__(self, ttl_seconds: Optional[int] = None, clock: Callable[[], float] = time.time):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._tokens: dict[str, tuple[Principal, Optional[float]]] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, auth_cfg: dict, clock: Callable[[], float] = time.time) -> 'TokenRegistry':
        """Build from the 'auth' config section; configured tokens do not expire."""
        ttl_minutes = auth_cfg.get('token_ttl_minutes')
        registry = cls(ttl_seconds=int(ttl_minutes) * 60 if ttl_minutes else None, clock=clock)
        for token, info in (auth_cfg.get('tokens') or {}).items():
            registry.register(str(token), Principal(
                user_id=str(info.get('user_id', info.get('name', ''))),
                name=str(info.get('name', '')),
                role=str(info.get('role', 'uye')),
            ), expires=False)
        return registry

    def register(self, token: str, principal: Principal, expires: bool = True) -> None:
        if principal.role not in ROLES:
            raise ValueError(f"Unknown role: {principal.role}")
        expires_at = None
        if expires and self.ttl_seconds:
            expires_at = self._clock() + self.ttl_seconds
        with self._lock:
            self._tokens[token] = (principal, expires_at)

    def issue(self, principal: Principal) -> str:
        """Create a new random token for a principal."""
        token = secrets.token_urlsafe(32)
        self.register(token, principal)
        return token

    def revoke(self, token: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)

    def resolve(self, token: str) -> Optional[Principal]:
        """Principal for a token, None if unknown or expired."""
        with self._lock:
            entry = self._tokens.get(token)
            if entry is None:
                return None
            principal, expires_at = entry
            if expires_at is not None and self._clock() > expires_at:
                self._tokens.pop(token, None)
                return None
            return principal


def require_principal(request: Request,
                      credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Principal:
    """Resolve the bearer token of a request."""
    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Access token required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    registry: TokenRegistry = request.app.state.token_registry
    principal = registry.resolve(credentials.credentials)
    if principal is None:
        raise HTTPException(
            status_code=401,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return principal


def require_roles(*roles: str):
    """Dependency that admits only the given roles."""

    def dependency(principal: Principal = Depends(require_principal)) -> Principal:
        if principal.role not in roles:
            logger.warning(f"User {principal.user_id} with role {principal.role} denied")
            raise HTTPException(status_code=403, detail=f"Only {' and '.join(roles)} role can do this")
        return principal

    return dependency
