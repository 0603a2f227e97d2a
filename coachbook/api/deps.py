import logging

import jwt
from fastapi import Depends, Request
from fastapi.security.utils import get_authorization_scheme_param
from sqlalchemy.ext.asyncio import AsyncSession

from coachbook.domain.errors import UnauthorizedError
from coachbook.domain.users.db_models import ROLE_ADMIN, User
from coachbook.infra.auth import read_access_token
from coachbook.infra.db import get_db_session
from coachbook.infra.processor import PaymentProcessor
from coachbook.infra.stripe_client import resolve_client
from coachbook.settings import settings

logger = logging.getLogger(__name__)


def _app_settings(request: Request):
    return getattr(request.app.state, "app_settings", None) or settings


async def get_current_user(
    request: Request,
    session: AsyncSession = Depends(get_db_session),
) -> User:
    scheme, token = get_authorization_scheme_param(request.headers.get("Authorization"))
    if scheme.lower() != "bearer" or not token:
        raise UnauthorizedError("Missing bearer token", title="Unauthorized")
    try:
        claims = read_access_token(token, _app_settings(request).auth_secret_key)
    except jwt.PyJWTError as exc:
        logger.info("auth_token_rejected", extra={"extra": {"reason": type(exc).__name__}})
        raise UnauthorizedError("Invalid bearer token", title="Unauthorized") from exc

    user = await session.get(User, claims.user_id)
    if user is None or not user.is_active or user.role != claims.role:
        raise UnauthorizedError("Token does not match an active user", title="Unauthorized")
    return user


async def require_admin(user: User = Depends(get_current_user)) -> User:
    if user.role != ROLE_ADMIN:
        raise UnauthorizedError("Admin role required")
    return user


def get_processor(request: Request) -> PaymentProcessor:
    return resolve_client(request.app.state)
