import logging
from typing import Optional

from fastapi import Header, HTTPException, Request

from .config import AppSettings
from .errors import AuthorizationError

logger = logging.getLogger("uvicorn.error")


def resolve_user(settings: AppSettings, authorization: Optional[str]) -> str:
    """Map an `Authorization: Bearer <token>` header to the owning user id."""
    if not authorization:
        raise AuthorizationError("Missing bearer token")
    scheme, _, token = authorization.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthorizationError("Malformed authorization header")
    user_id = settings.api_tokens.get(token.strip())
    if not user_id:
        raise AuthorizationError("Unknown bearer token")
    return user_id


def get_current_user(request: Request, authorization: Optional[str] = Header(None)) -> str:
    try:
        return resolve_user(request.app.state.settings, authorization)
    except AuthorizationError as exc:
        logger.info("Rejected request to %s: %s", request.url.path, exc)
        raise HTTPException(
            status_code=401,
            detail="Unauthorized",
            headers={"WWW-Authenticate": "Bearer"},
        ) from exc
