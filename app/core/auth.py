"""Password hashing, access-token signing/verification and opaque token helpers."""

import hashlib
import secrets
from datetime import datetime, timezone, timedelta
from typing import Any

import bcrypt
from jose import ExpiredSignatureError, JWTError, jwt

from app.config import settings
from app.core.errors import AuthError, InvalidTokenError, TokenExpiredError

# Claims set by the signer; extra claims may not override them
_RESERVED_CLAIMS = frozenset({"sub", "iat", "exp"})


def hash_password(password: str) -> str:
    """Hash password with bcrypt. Bytes truncated to 72 (bcrypt limit); no passlib re-encoding."""
    pwd_bytes = password.encode("utf-8")[:72]
    hashed = bcrypt.hashpw(pwd_bytes, bcrypt.gensalt())
    return hashed.decode("utf-8")


def verify_password(plain_password: str, password_hash: str) -> bool:
    """Verify password with bcrypt. Plain password truncated to 72 bytes."""
    plain_bytes = plain_password.encode("utf-8")[:72]
    try:
        return bcrypt.checkpw(plain_bytes, password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


def create_access_token(subject: str, extra_claims: dict[str, Any] | None = None) -> str:
    """Sign an HS256 access token for subject (the user's email), valid for access_token_expire_minutes."""
    now = datetime.now(timezone.utc)
    payload: dict[str, Any] = {
        k: v for k, v in (extra_claims or {}).items() if k not in _RESERVED_CLAIMS
    }
    payload.update(
        {
            "sub": subject,
            "iat": now,
            "exp": now + timedelta(minutes=settings.access_token_expire_minutes),
        }
    )
    result = jwt.encode(payload, settings.secret_key, algorithm=settings.jwt_algorithm)
    return result if isinstance(result, str) else result.decode("utf-8")


def decode_token(token: str) -> dict[str, Any]:
    return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])


def verify_access_token(token: str) -> str:
    """Return the token's subject. Raises TokenExpiredError or InvalidTokenError."""
    try:
        payload = decode_token(token)
    except ExpiredSignatureError as e:
        raise TokenExpiredError("Access token has expired") from e
    except JWTError as e:
        raise InvalidTokenError("Invalid access token") from e
    # jose only rejects exp < now; a token is already expired at its exp second
    exp = payload.get("exp")
    if isinstance(exp, (int, float)) and exp <= datetime.now(timezone.utc).timestamp():
        raise TokenExpiredError("Access token has expired")
    subject = payload.get("sub")
    if not subject or not isinstance(subject, str):
        raise InvalidTokenError("Invalid access token")
    return subject


def is_token_valid_for(token: str, expected_subject: str) -> bool:
    try:
        return verify_access_token(token) == expected_subject
    except AuthError:
        return False


def generate_opaque_token() -> str:
    """Random URL-safe token (256 bits) for refresh, verification and reset links."""
    return secrets.token_urlsafe(32)


def hash_token(token: str) -> str:
    """SHA256 hash of an opaque token for storage and lookup."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
