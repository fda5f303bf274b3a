from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import jwt
from passlib.context import CryptContext

from rental_core.core.config import get_settings

# OTP codes live minutes, not years: pbkdf2 keeps verification fast and the code itself is never stored
otp_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_otp_code(raw: str) -> str:
    return otp_context.hash(raw)


def verify_otp_code(raw: str, hashed: str) -> bool:
    return otp_context.verify(raw, hashed)


def create_access_token(
    user_id: str,
    role: str,
    *,
    display_name: Optional[str] = None,
    expires_minutes: Optional[int] = None,
) -> str:
    """
    Signs a bearer token for one principal. In production the identity service issues
    these; this is used by local tooling and tests.
    """
    settings = get_settings()
    now = datetime.now(timezone.utc)
    claims: Dict[str, Any] = {
        "sub": user_id,
        "user_id": user_id,
        "role": role,
        "iss": settings.jwt_issuer,
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=expires_minutes or settings.jwt_access_token_minutes)).timestamp()),
    }
    if display_name:
        claims["display_name"] = display_name
    return jwt.encode(claims, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Dict[str, Any]:
    settings = get_settings()
    return jwt.decode(
        token,
        settings.jwt_secret_key,
        algorithms=[settings.jwt_algorithm],
        issuer=settings.jwt_issuer,
    )
