import logging
from typing import Optional

import bcrypt
import jwt
from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from exceptions.exceptions import AuthenticationError, PermissionDeniedError
from . import config
from .lifecycle import utcnow
from .models import CamelModel, Role

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


class TokenPayload(CamelModel):
    user_id: str
    email: str
    role: Role


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: Optional[str]) -> bool:
    if not hashed_password:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError:
        logger.error("Stored password hash is malformed")
        return False


def _secret() -> str:
    if not config.JWT_SECRET:
        raise RuntimeError("JWT_SECRET environment variable is required")
    return config.JWT_SECRET


def create_access_token(user: dict) -> str:
    payload = {
        "userId": user["_id"],
        "email": user["email"],
        "role": user["role"],
        "exp": utcnow() + config.parse_expiry(config.JWT_EXPIRES_IN),
    }
    return jwt.encode(payload, _secret(), algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str) -> TokenPayload:
    try:
        claims = jwt.decode(token, _secret(), algorithms=[config.JWT_ALGORITHM])
        return TokenPayload(**claims)
    except (jwt.PyJWTError, ValueError) as e:
        logger.error(f"Rejected bearer token: {e}")
        raise AuthenticationError("Invalid or expired token")


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> TokenPayload:
    if credentials is None:
        raise AuthenticationError("Not authenticated")
    return decode_access_token(credentials.credentials)


def require_roles(*roles: Role):
    async def dependency(
        current_user: TokenPayload = Depends(get_current_user),
    ) -> TokenPayload:
        if current_user.role not in roles:
            raise PermissionDeniedError("You do not have permission to perform this action")
        return current_user

    return dependency


require_staff = require_roles(Role.ADMIN, Role.STAFF)
require_admin = require_roles(Role.ADMIN)
