"""
Bearer tokens with a role claim

Login and account management live elsewhere; this module only mints and
checks the HS256 tokens the registry write endpoints require.
Claims: ``sub`` (principal id), ``role`` (authority | admin), ``exp``, ``iat``.
"""

from typing import Any, Dict, Optional
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum

import jwt

from .exceptions import AuthenticationError, AuthorizationError


class Role(Enum):
    AUTHORITY = "authority"
    ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller"""
    subject: str
    role: Role

    @property
    def is_authority(self) -> bool:
        return self.role == Role.AUTHORITY


def issue_token(
    subject: str,
    role: Role,
    secret: str,
    ttl_minutes: int = 60,
    algorithm: str = "HS256"
) -> str:
    """Mint a bearer token for a principal"""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": subject,
        "role": role.value,
        "iat": now,
        "exp": now + timedelta(minutes=ttl_minutes),
    }
    return jwt.encode(claims, secret, algorithm=algorithm)


def decode_token(token: str, secret: str, algorithm: str = "HS256") -> Principal:
    """
    Check signature and expiry, return the principal

    Raises:
        AuthenticationError: missing, expired, forged, or no usable role
    """
    if not token:
        raise AuthenticationError("No token provided")

    try:
        claims: Dict[str, Any] = jwt.decode(
            token,
            secret,
            algorithms=[algorithm],
            options={"require": ["exp", "sub"]},
        )
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired") from None
    except jwt.InvalidTokenError:
        raise AuthenticationError("Invalid token") from None

    try:
        role = Role(claims.get("role"))
    except ValueError:
        raise AuthenticationError("Token carries no known role") from None

    return Principal(subject=str(claims["sub"]), role=role)


def bearer_token(authorization_header: Optional[str]) -> str:
    """Extract the token from an ``Authorization: Bearer ...`` header"""
    if not authorization_header:
        return ""
    value = authorization_header.strip()
    if value.lower().startswith("bearer "):
        return value[7:].strip()
    return value


def require_authority(principal: Optional[Principal]) -> Principal:
    """
    Raises:
        AuthenticationError: no principal
        AuthorizationError: principal is not an authority
    """
    if principal is None:
        raise AuthenticationError("Authentication required")
    if not principal.is_authority:
        raise AuthorizationError("Access denied: Authority only")
    return principal


def operator_token(subject: str, role: Role, settings) -> str:
    """Mint a token with the configured secret, algorithm and lifetime"""
    return issue_token(
        subject,
        role,
        settings.JWT_SECRET,
        ttl_minutes=settings.TOKEN_TTL_MINUTES,
        algorithm=settings.JWT_ALGORITHM,
    )
