"""
Session token and signature validation for the Automation Service.
"""

import hashlib
import hmac
from dataclasses import dataclass
from typing import Optional

import jwt

from shared.logging import get_logger, set_user_context
from shared.errors import AuthenticationError, AuthorizationError
from .rules.models import CrmRole


logger = get_logger("automation.auth")

WRITE_ROLES = (CrmRole.ADMIN, CrmRole.MANAGER)
ACTIVE_ROLES = (CrmRole.ADMIN, CrmRole.MANAGER, CrmRole.AGENT)


@dataclass
class SessionUser:
    """Caller identity taken from the session token."""
    user_id: str
    org_id: str
    role: CrmRole

    def require_role(self, *roles: CrmRole):
        if self.role not in roles:
            raise AuthorizationError(
                "Insufficient role",
                {"role": self.role.value, "required": [r.value for r in roles]}
            )


def _strip_bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthenticationError("Missing bearer token")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise AuthenticationError("Malformed authorization header")
    return token.strip()


def decode_session_token(authorization: Optional[str], secret: str, algorithm: str = "HS256") -> SessionUser:
    """Validate a Bearer session token and return the caller.

    The token must carry `sub`, `org_id` and a known `crm_role`.
    """
    token = _strip_bearer(authorization)
    try:
        claims = jwt.decode(token, secret, algorithms=[algorithm])
    except jwt.ExpiredSignatureError:
        raise AuthenticationError("Token has expired")
    except jwt.InvalidTokenError as e:
        logger.warning("Token verification failed", error=str(e))
        raise AuthenticationError("Invalid token", {"token_error": str(e)})

    user_id = claims.get("sub")
    org_id = claims.get("org_id")
    if not user_id or not org_id:
        raise AuthenticationError("Token missing sub or org_id claim")

    try:
        role = CrmRole(claims.get("crm_role", CrmRole.VIEWER.value))
    except ValueError:
        raise AuthorizationError("Unknown CRM role", {"crm_role": claims.get("crm_role")})

    set_user_context(user_id=user_id, org_id=org_id)
    return SessionUser(user_id=user_id, org_id=org_id, role=role)


def verify_cron_secret(authorization: Optional[str], secret: str):
    """Check the scheduler tick's Bearer secret."""
    token = _strip_bearer(authorization)
    if not hmac.compare_digest(token.encode(), secret.encode()):
        raise AuthenticationError("Invalid cron secret")


def sign_payload(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(secret: Optional[str], body: bytes, signature: Optional[str]):
    """Check an inbound webhook's X-Signature (hex HMAC-SHA256 of the raw body).

    A `sha256=` prefix on the header is accepted.
    """
    if not secret:
        raise AuthenticationError("Webhook secret not configured")
    if not signature:
        raise AuthenticationError("Missing signature")
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    if not hmac.compare_digest(sign_payload(secret, body).encode(), signature.encode()):
        raise AuthenticationError("Invalid signature")
