import logging
from datetime import datetime, timedelta, timezone

import jwt
from core.config import settings
from core.logging_setup import log_step
from fastapi import Request
from pydantic import BaseModel, ValidationError

logger = logging.getLogger(__name__)

LOG_STEP = "SESSION"

AUTH_COOKIE_NAME = "app_auth_token"
TOKEN_ISSUER = "social-publisher-service"
TOKEN_AUDIENCE = "web-client"


class TokenPayload(BaseModel):
    """Pydantic model for the app JWT payload"""

    iss: str
    iat: int
    exp: int
    sub: str
    aud: str


class SessionUser(BaseModel):
    id: str


def generate_jwt_token(user_id: str, expires_delta: timedelta | None = None) -> str:
    """
    Generates an app session JWT (HS256) for the given user.
    """
    now = datetime.now(timezone.utc)
    expires_delta = expires_delta or timedelta(hours=1)

    payload = {
        "iss": TOKEN_ISSUER,
        "iat": now,
        "exp": now + expires_delta,
        "sub": user_id,
        "aud": TOKEN_AUDIENCE,
    }

    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm="HS256")


def _extract_token(request: Request) -> str | None:
    token = request.cookies.get(AUTH_COOKIE_NAME)
    if token:
        return token

    authorization = request.headers.get("authorization")
    if not authorization:
        return None

    parts = authorization.split()
    if len(parts) != 2 or parts[0] != "Bearer":
        with log_step(LOG_STEP):
            logger.warning("Auth failed: Invalid Authorization header format.")
        return None
    return parts[1]


def decode_session_token(token: str) -> SessionUser | None:
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=["HS256"],
            issuer=TOKEN_ISSUER,
            audience=TOKEN_AUDIENCE,
        )
        parsed = TokenPayload(**payload)
        return SessionUser(id=parsed.sub)
    except jwt.ExpiredSignatureError:
        with log_step(LOG_STEP):
            logger.warning("Auth failed: Token has expired.")
        return None
    except (jwt.InvalidTokenError, ValidationError) as e:
        with log_step(LOG_STEP):
            logger.warning(f"Auth failed: Invalid token. {e}")
        return None


def get_session(request: Request) -> SessionUser | None:
    """
    Resolves the signed-in user from the 'app_auth_token' cookie or a
    Bearer header. Returns None instead of raising so callers can answer
    with a sign-in redirect.
    """
    token = _extract_token(request)
    if not token:
        return None
    return decode_session_token(token)
