"""Bearer-token auth: password hashing, JWT issue/verify, request gate."""

from __future__ import annotations

import logging
import secrets
import time
from typing import Any, Dict, Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError
from jose import jwt
from jose.exceptions import JWTError
from starlette.requests import Request
from starlette.responses import JSONResponse

from recordbase.config import Settings

logger = logging.getLogger("recordbase.auth")

AUTH_REQUIRED_MESSAGE = "Authentication required"

_hasher = PasswordHasher()
_dummy_hash: str | None = None


class AuthError(Exception):
    pass


def hash_password(password: str) -> str:
    return _hasher.hash(password)


def _missing_user_hash() -> str:
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = _hasher.hash(secrets.token_hex(16))
    return _dummy_hash


def verify_password(stored_hash: str | None, password: str) -> bool:
    """Check ``password`` against ``stored_hash``.

    A missing hash is verified against a throwaway one so unknown usernames
    cost the same as wrong passwords.
    """
    if not stored_hash:
        _matches(_missing_user_hash(), password)
        return False
    return _matches(stored_hash, password)


def _matches(stored_hash: str, password: str) -> bool:
    try:
        return bool(_hasher.verify(stored_hash, password))
    except (VerificationError, InvalidHashError):
        return False


def issue_token(settings: Settings, user_id: int, username: str) -> str:
    now = int(time.time())
    claims: Dict[str, Any] = {"sub": str(user_id), "id": user_id, "username": username, "iat": now}
    if settings.token_ttl_s > 0:
        claims["exp"] = now + settings.token_ttl_s
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_token(settings: Settings, token: str) -> dict:
    try:
        claims = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise AuthError(str(exc)) from exc
    if not isinstance(claims.get("id"), int) or not isinstance(claims.get("username"), str):
        raise AuthError("token is missing identity claims")
    return claims


def _get_bearer_token(request: Request) -> Optional[str]:
    auth = request.headers.get("Authorization", "")
    if not auth.startswith("Bearer "):
        return None
    return auth.split(" ", 1)[1].strip() or None


def _identity(claims: dict) -> dict:
    return {"id": claims.get("id"), "username": claims.get("username"), "iat": claims.get("iat"), "exp": claims.get("exp")}


def auth_error_response() -> JSONResponse:
    return JSONResponse({"message": AUTH_REQUIRED_MESSAGE}, status_code=401)


def authenticate(request: Request, settings: Settings) -> dict | JSONResponse:
    """Resolve the caller's identity or return the uniform 401 response."""
    token = _get_bearer_token(request)
    if not token:
        logger.warning("auth_missing_token path=%s", request.url.path)
        return auth_error_response()
    try:
        claims = decode_token(settings, token)
    except AuthError as exc:
        logger.warning("auth_invalid_token path=%s error=%s", request.url.path, exc)
        return auth_error_response()
    user = _identity(claims)
    request.state.user = user
    return user


def optional_identity(request: Request, settings: Settings) -> dict | None:
    token = _get_bearer_token(request)
    if not token:
        return None
    try:
        return _identity(decode_token(settings, token))
    except AuthError:
        return None
