import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Query, Session

from library_api.core.config import settings
from library_api.core.database import get_db
from library_api.core.errors import AuthenticationFailed, RateLimited
from library_api.core.security import decode_access_token
from library_api.core.ttl_store import RateLimiter, TokenBlacklist, TTLStore
from library_api.models.models import Role, User
from library_api.services.access import ensure_permission

logger = logging.getLogger(__name__)

bearer = HTTPBearer(auto_error=False)

RATE_LIMITS = {
    "Guest": settings.rate_limit_guest,
    Role.USER.value: settings.rate_limit_user,
    Role.LIBRARIAN.value: settings.rate_limit_librarian,
    Role.ADMIN.value: settings.rate_limit_admin,
}


def get_ttl_store(request: Request) -> TTLStore:
    return request.app.state.ttl_store


def get_blacklist(store: TTLStore = Depends(get_ttl_store)) -> TokenBlacklist:
    return TokenBlacklist(store)


def enforce_rate_limit(request: Request, response: Response,
                       credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
                       store: TTLStore = Depends(get_ttl_store)) -> None:
    if not settings.rate_limit_enabled:
        return
    identity = f"ip:{request.client.host if request.client else 'unknown'}"
    role = "Guest"
    if credentials is not None:
        try:
            claims = decode_access_token(credentials.credentials)
            identity, role = f"user:{claims['sub']}", claims.get("role", "Guest")
        except AuthenticationFailed:
            pass  # rejected later by get_current_user; count it as a guest hit

    decision = RateLimiter(store, settings.rate_limit_window_seconds).hit(
        identity, RATE_LIMITS.get(role, settings.rate_limit_guest))
    if not decision.allowed:
        logger.warning(f"Rate limit exceeded for {identity} ({role})")
        raise RateLimited(f"Rate limit exceeded. Maximum {decision.limit} requests per "
                          f"{settings.rate_limit_window_seconds}s for {role} role",
                          headers=decision.headers())
    response.headers.update(decision.headers())


def get_token_claims(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
                     blacklist: TokenBlacklist = Depends(get_blacklist)) -> Dict[str, Any]:
    if credentials is None or not credentials.credentials:
        raise AuthenticationFailed("Access denied. No token provided")
    claims = decode_access_token(credentials.credentials)
    if blacklist.is_revoked(claims.get("jti", "")):
        raise AuthenticationFailed("Access denied. Token has been revoked")
    return claims


def get_current_user(claims: Dict[str, Any] = Depends(get_token_claims),
                     db: Session = Depends(get_db)) -> User:
    try:
        user = db.get(User, int(claims["sub"]))
    except (KeyError, ValueError):
        raise AuthenticationFailed("Access denied. Invalid token")
    if user is None:
        raise AuthenticationFailed("Access denied. User not found")
    if not user.is_active:
        raise AuthenticationFailed("Access denied. Account is deactivated")
    return user


def require_permission(resource: str, action: str):
    """Dependency factory gating a route on ``has_permission(role, resource, action)``."""
    def checker(user: User = Depends(get_current_user)) -> User:
        ensure_permission(user, resource, action)
        return user
    return checker


def paginate(query: Query, page: int, limit: int) -> Tuple[List[Any], Dict[str, Any]]:
    total = query.order_by(None).count()
    items = query.offset((page - 1) * limit).limit(limit).all()
    total_pages = math.ceil(total / limit) if limit else 0
    return items, {
        "current_page": page,
        "total_pages": total_pages,
        "total_items": total,
        "items_per_page": limit,
        "has_next": page < total_pages,
        "has_prev": page > 1,
    }
