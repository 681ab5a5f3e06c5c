"""Bearer-token identity for API routes.

Tokens are issued by the hosted auth provider; this service only checks
the signature and reads the caller's id (``sub``) and ``role``.
"""

import logging
from typing import Optional

import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from config import Config, get_config
from errors import AuthorizationError, ConfigurationError, ForbiddenError

logger = logging.getLogger("api.auth")

bearer_scheme = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    id: str
    role: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def decode_token(token: str, config: Config) -> CurrentUser:
    if not config.jwt_secret:
        raise ConfigurationError("AUTH_JWT_SECRET is not configured")
    try:
        payload = jwt.decode(token, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.PyJWTError as exc:
        logger.info("rejected bearer token: %s", exc)
        raise AuthorizationError()
    sub = payload.get("sub")
    if not sub:
        raise AuthorizationError()
    return CurrentUser(id=str(sub), role=payload.get("role"))


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    config: Config = Depends(get_config),
) -> CurrentUser:
    """Resolve the caller from ``Authorization: Bearer`` or raise 401."""
    if credentials is None or credentials.scheme.lower() != "bearer":
        raise AuthorizationError()
    return decode_token(credentials.credentials, config)


def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise ForbiddenError("Admin access required")
    return user
