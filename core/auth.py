import logging
from dataclasses import dataclass
from typing import Optional, Union

from jose import JWTError, jwt

from core.config import settings
from core.exceptions import AuthenticationError
from models.user import UserRole

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthContext:
    """Authenticated account resolved from a bearer credential.

    Provides convenient properties for role checks:
    - is_counselor: may claim sessions and author counselor messages
    - is_admin: may read any transcript
    """

    user_id: str
    role: str

    @property
    def is_counselor(self) -> bool:
        return self.role == UserRole.COUNSELOR.value

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

    @property
    def is_staff(self) -> bool:
        """Counselors and admins."""
        return self.is_counselor or self.is_admin


@dataclass(frozen=True)
class AnonymousContext:
    """Unauthenticated party identified only by its client-held anonymous id.

    anonymous_id is None when the request carried no x-anonymous-id header;
    only session creation tolerates that (the id may come from the body).
    """

    anonymous_id: Optional[str]


# Closed set of callers. Sender-specific checks dispatch on these two types
# and raise TypeError on anything else.
Principal = Union[AuthContext, AnonymousContext]


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """Return the token from an `Authorization: Bearer <token>` header, if any."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


def decode_access_token(token: str) -> dict:
    """
    Verify a bearer credential issued by the account service.

    Returns:
        The verified claims. The subject is in "sub" (or "id" for legacy tokens).

    Raises:
        AuthenticationError: If the token is expired, tampered with, or lacks a subject.
    """
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token expired")
    except JWTError as e:
        logger.warning("JWT validation error: %s", e)
        raise AuthenticationError("Invalid token")

    if not (payload.get("sub") or payload.get("id")):
        raise AuthenticationError("Invalid token")
    return payload


def token_subject(payload: dict) -> str:
    return str(payload.get("sub") or payload.get("id"))
