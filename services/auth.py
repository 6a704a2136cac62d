"""
Bearer tokens for the API (PyJWT).
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

import jwt

from config import Config
from database.models import UserRole, utcnow
from services.exceptions import AuthenticationException

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class TokenPayload:
    user_id: int
    role: UserRole


def create_access_token(user_id: int, role: UserRole, config: Config, expires_hours: Optional[int] = None) -> str:
    now = utcnow()
    payload = {
        "sub": str(user_id),
        "role": role.value,
        "iat": now,
        "exp": now + timedelta(hours=expires_hours or config.TOKEN_EXP_HOURS),
    }
    return jwt.encode(payload, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


def decode_access_token(token: str, config: Config) -> TokenPayload:
    """
    Validate a token and return its claims.

    Raises:
        AuthenticationException: expired, malformed or badly signed token
    """
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
        return TokenPayload(user_id=int(payload["sub"]), role=UserRole(payload["role"]))
    except jwt.ExpiredSignatureError:
        raise AuthenticationException("Token expired")
    except (jwt.InvalidTokenError, KeyError, ValueError) as e:
        logger.debug("Rejected token: %r", e)
        raise AuthenticationException("Invalid token")
