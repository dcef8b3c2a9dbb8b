"""
Tokens and passwords.

JWT bearer tokens (HS256) carry the caller's user id, current organization,
role and permissions; claims use the camelCase keys the dashboard reads.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import bcrypt
import jwt

from config.settings import AuthConfig, get_settings
from models.schemas import JwtPayload


class TokenError(Exception):
    pass


class TokenExpired(TokenError):
    pass


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def create_token(payload: JwtPayload, config: Optional[AuthConfig] = None) -> str:
    config = config or get_settings().auth
    now = datetime.now(timezone.utc)
    claims = payload.model_dump(mode="json", by_alias=True)
    claims.update({"iat": now, "exp": now + timedelta(days=config.jwt_expires_days)})
    return jwt.encode(claims, config.jwt_secret, algorithm=config.jwt_algorithm)


def decode_token(token: str, config: Optional[AuthConfig] = None) -> JwtPayload:
    config = config or get_settings().auth
    try:
        claims = jwt.decode(token, config.jwt_secret, algorithms=[config.jwt_algorithm])
    except jwt.ExpiredSignatureError as e:
        raise TokenExpired("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise TokenError("Invalid token") from e
    try:
        return JwtPayload.model_validate(claims)
    except ValueError as e:
        raise TokenError("Invalid token payload") from e
