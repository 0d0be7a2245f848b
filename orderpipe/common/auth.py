"""Request authentication for user-facing and internal endpoints.

Users present an HS256 JWT issued by the storefront's auth provider; internal
callers (verification gateway, sweeps, schedulers) present the shared service
key. Both arrive as `Authorization: Bearer <token>`.
"""

import hmac
from dataclasses import dataclass

from fastapi import Header
from jose import JWTError, jwt

from orderpipe.common.config import settings
from orderpipe.common.errors import AuthRequired


@dataclass(frozen=True)
class CurrentUser:
    user_id: str
    email: str | None = None


def _bearer_token(authorization: str | None) -> str:
    if not authorization:
        raise AuthRequired("Missing authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthRequired("Invalid authorization header")
    return token.strip()


def decode_user_token(token: str) -> CurrentUser:
    """Validate signature, expiry and audience of a user token."""

    try:
        claims = jwt.decode(
            token,
            settings.auth_jwt_secret.get_secret_value(),
            algorithms=["HS256"],
            audience=settings.auth_jwt_audience,
        )
    except JWTError as exc:
        raise AuthRequired("Invalid authentication token") from exc
    user_id = claims.get("sub")
    if not user_id:
        raise AuthRequired("Invalid authentication token")
    return CurrentUser(user_id=str(user_id), email=claims.get("email"))


def require_user(authorization: str | None = Header(default=None)) -> CurrentUser:
    """FastAPI dependency resolving the calling user from a bearer JWT."""

    return decode_user_token(_bearer_token(authorization))


def require_service(authorization: str | None = Header(default=None)) -> None:
    """FastAPI dependency for internal endpoints guarded by the service key."""

    token = _bearer_token(authorization)
    expected = settings.service_api_key.get_secret_value()
    if not expected or not hmac.compare_digest(token.encode(), expected.encode()):
        raise AuthRequired("Invalid service credential")
