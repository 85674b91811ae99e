"""FastAPI dependencies for authentication and shared services."""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError

from fintrack.core.cache import VersionedTTLCache
from fintrack.core.security import decode_jwt
from fintrack.services.query_analysis import QueryAnalyzer

bearer_scheme = HTTPBearer()


class AuthContext:
    """Resolved identity carried through a request."""

    __slots__ = ("user_id", "role")

    def __init__(self, user_id: str, role: str) -> None:
        self.user_id = user_id
        self.role = role


async def get_auth_context(
    credentials: Annotated[HTTPAuthorizationCredentials, Depends(bearer_scheme)],
) -> AuthContext:
    """Resolve a bearer JWT to an AuthContext."""
    try:
        payload = decode_jwt(credentials.credentials)
    except JWTError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired JWT",
        ) from exc

    try:
        return AuthContext(user_id=payload["sub"], role=payload.get("role", "user"))
    except KeyError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Malformed JWT payload",
        ) from exc


def get_cache(request: Request) -> VersionedTTLCache:
    """The cache owned by the application lifespan."""
    return request.app.state.cache


def get_query_analyzer(request: Request) -> QueryAnalyzer | None:
    return getattr(request.app.state, "query_analyzer", None)


# Typed shorthand for use in route signatures
Auth = Annotated[AuthContext, Depends(get_auth_context)]
Cache = Annotated[VersionedTTLCache, Depends(get_cache)]
Analyzer = Annotated[QueryAnalyzer | None, Depends(get_query_analyzer)]
