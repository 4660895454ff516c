"""
Session credential verification for the WebSocket transport.

Tokens are HS256 JWTs signed with JWT_SECRET. The operator id is read from
`sub`, `userId` or `id`, in that order.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from jose import ExpiredSignatureError, JWTError, jwt
import structlog

from src.assist.errors import AuthError

logger = structlog.get_logger(__name__)

AUTH_CLOSE_CODE = 4401
_USER_ID_CLAIMS = ("sub", "userId", "id")


@dataclass(frozen=True)
class Principal:
    user_id: str
    claims: Dict[str, Any] = field(default_factory=dict, compare=False)


def token_from_request(query_params: Mapping[str, str], headers: Mapping[str, str]) -> Optional[str]:
    """Token from `?token=` or an `Authorization: Bearer` header."""
    token = (query_params.get("token") or "").strip()
    if token:
        return token
    authorization = headers.get("authorization") or headers.get("Authorization") or ""
    scheme, _, value = authorization.partition(" ")
    if scheme.lower() == "bearer" and value.strip():
        return value.strip()
    return None


def verify_token(token: Optional[str], secret: str, algorithm: str = "HS256") -> Principal:
    """
    Verify a session token.

    Raises:
        AuthError: AUTH_REQUIRED, AUTH_EXPIRED or AUTH_INVALID.
    """
    if not token:
        raise AuthError("Authentication required", code="AUTH_REQUIRED")

    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm])
    except ExpiredSignatureError:
        raise AuthError("Session expired", code="AUTH_EXPIRED")
    except JWTError as e:
        logger.info("Rejected session token", error=str(e))
        raise AuthError("Invalid session token", code="AUTH_INVALID")

    for claim in _USER_ID_CLAIMS:
        value = claims.get(claim)
        if value:
            return Principal(user_id=str(value), claims=claims)

    raise AuthError("Session token has no user id", code="AUTH_INVALID")
