"""
JWT Parser - Issue and verify bearer credentials

Access tokens embed the identity id ('sub') and the active role id at issue
time. The active-role claim is informational only: the authentication gate
always scopes permissions to the live active_role_id in the database, so a
role switch takes effect without re-issuing the token.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import jwt

from src.utils.logging import get_logger
from src.utils.rbac.errors import AuthenticationError

logger = get_logger(__name__)

TOKEN_TYPE_ACCESS = "access"


@dataclass(frozen=True)
class TokenClaims:
    """
    Verified access-token payload.

    Attributes:
        identity_id: Subject of the token
        active_role_id: Active role when the token was issued (may be stale)
        issued_at: 'iat' claim
        expires_at: 'exp' claim
        jti: Token id
    """
    identity_id: str
    active_role_id: Optional[str]
    issued_at: datetime
    expires_at: datetime
    jti: str


class TokenService:
    """
    Creates and validates HS256 access tokens.

    Usage:
        tokens = TokenService(secret_key=config.jwt_secret)
        token = tokens.issue_token(user.id, user.active_role_id)
        claims = tokens.verify_token(token)
    """

    def __init__(
        self,
        secret_key: str,
        algorithm: str = "HS256",
        expires_minutes: int = 24 * 60,
        issuer: Optional[str] = None,
    ):
        """
        Args:
            secret_key: Signing secret
            algorithm: JWT algorithm
            expires_minutes: Access token lifetime
            issuer: Optional 'iss' claim, verified when set
        """
        if not secret_key:
            raise ValueError("A JWT secret key is required")
        self.secret_key = secret_key
        self.algorithm = algorithm
        self.expires_minutes = expires_minutes
        self.issuer = issuer

    def issue_token(self, identity_id: str, active_role_id: Optional[str] = None, *, now: Optional[datetime] = None) -> str:
        now = now or datetime.now(timezone.utc)
        payload: Dict[str, Any] = {
            "sub": identity_id,
            "active_role_id": active_role_id,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(minutes=self.expires_minutes)).timestamp()),
            "jti": secrets.token_urlsafe(16),
            "type": TOKEN_TYPE_ACCESS,
        }
        if self.issuer:
            payload["iss"] = self.issuer

        token = jwt.encode(payload, self.secret_key, algorithm=self.algorithm)
        logger.debug(f"Access token issued for identity {identity_id}")
        return token

    def verify_token(self, token: str) -> TokenClaims:
        """
        Verify signature, expiry and shape of an access token.

        Raises:
            AuthenticationError: On any verification failure
        """
        if not token:
            raise AuthenticationError("Authentication required")

        try:
            payload = jwt.decode(
                token,
                self.secret_key,
                algorithms=[self.algorithm],
                issuer=self.issuer,
                options={"require": ["exp", "iat", "sub"]},
            )
        except jwt.ExpiredSignatureError:
            logger.info("Rejected expired token")
            raise AuthenticationError("Token has expired")
        except jwt.InvalidTokenError as e:
            logger.warning(f"Rejected invalid token: {e}")
            raise AuthenticationError("Invalid token")

        if payload.get("type") != TOKEN_TYPE_ACCESS:
            raise AuthenticationError("Token is not an access token")

        identity_id = payload.get("sub")
        if not isinstance(identity_id, str) or not identity_id:
            raise AuthenticationError("Token has no subject")

        return TokenClaims(
            identity_id=identity_id,
            active_role_id=payload.get("active_role_id"),
            issued_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            jti=payload.get("jti", ""),
        )


def extract_bearer_token(header_value: Optional[str]) -> Optional[str]:
    """
    Pull the token out of an 'Authorization: Bearer <token>' header value.

    Returns:
        The token, or None if the header is missing or uses another scheme
    """
    if not header_value:
        return None
    scheme, _, token = header_value.strip().partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
