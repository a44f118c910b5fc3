from typing import Optional

from fastapi import Depends, Request, Response
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from examprep.core.container import Container
from examprep.core.errors import Unauthorized

bearer = HTTPBearer(auto_error=False)


def get_container(request: Request) -> Container:
    return request.app.state.container


def _apply_headers(response: Response, remaining: int, reset_in: int) -> None:
    response.headers["X-RateLimit-Remaining"] = str(remaining)
    response.headers["X-RateLimit-Reset"] = str(reset_in)


def get_current_user_id(
    response: Response,
    creds: Optional[HTTPAuthorizationCredentials] = Depends(bearer),
    container: Container = Depends(get_container),
) -> str:
    """Resolve the caller, create their user row on first sight, count the request."""
    user_id = container.identity.current_user_id(creds.credentials if creds else None)
    if not user_id:
        raise Unauthorized()
    container.users.ensure_user(user_id)
    result = container.rate_limiter.check("authenticated", user_id)
    _apply_headers(response, result.remaining, result.reset_in)
    return user_id


def ai_rate_limit(
    response: Response,
    user_id: str = Depends(get_current_user_id),
    container: Container = Depends(get_container),
) -> str:
    """Tighter limit for endpoints that call the content generator."""
    result = container.rate_limiter.check("ai_endpoint", user_id)
    _apply_headers(response, result.remaining, result.reset_in)
    return user_id
