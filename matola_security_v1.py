"""
Matola - Security Enforcement
Version: 1.0.0

Authentication and role checks for route handlers. Checks are pure: they
read the request context and raise Unauthorized / Forbidden, nothing else.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, Mapping, Optional, Union

from matola_enforcement_v1 import Forbidden, Unauthorized
from matola_models_v1 import Principal, Role, VerificationState

logger = logging.getLogger("matola.security")

REDACTED = "[REDACTED]"

SENSITIVE_FIELDS = frozenset({
    'password',
    'pin_hash',
    'api_key',
    'secret',
    'token',
    'signature',
})

RoleLike = Union[Role, str]


@dataclass(frozen=True)
class RequestContext:
    """What the transport layer learned about the caller."""
    principal: Optional[Principal] = None
    token: Optional[str] = None
    expires_at: Optional[datetime] = None
    revoked: bool = False


def _role_value(role: RoleLike) -> str:
    return getattr(role, "value", role)


def require_authenticated(context: Optional[RequestContext], now: Optional[datetime] = None) -> Principal:
    """Return the caller's principal or raise Unauthorized."""
    if context is None or not context.token or context.principal is None:
        raise Unauthorized("Authentication required", code="MISSING_TOKEN")

    if context.revoked:
        logger.warning(f"Revoked token used by {context.principal.user_id}")
        raise Unauthorized("Token has been revoked", code="TOKEN_REVOKED")

    now = now or datetime.now()
    if context.expires_at is not None and context.expires_at <= now:
        raise Unauthorized("Token has expired", code="TOKEN_EXPIRED")

    return context.principal


def require_role(context: Optional[RequestContext], allowed_roles: Iterable[RoleLike],
                 now: Optional[datetime] = None) -> Principal:
    """Authenticate, then require one of allowed_roles."""
    principal = require_authenticated(context, now=now)
    allowed = {_role_value(r) for r in allowed_roles}
    if _role_value(principal.role) not in allowed:
        logger.warning(
            f"AUTHORIZATION VIOLATION: {principal.user_id} ({_role_value(principal.role)}) "
            f"needs one of {sorted(allowed)}"
        )
        raise Forbidden("Insufficient permissions", code="INSUFFICIENT_ROLE")
    return principal


def require_admin(context: Optional[RequestContext], now: Optional[datetime] = None) -> Principal:
    return require_role(context, [Role.ADMIN], now=now)


def require_resource_owner(context: Optional[RequestContext], owner_id: str,
                           now: Optional[datetime] = None) -> Principal:
    """Caller must own the resource. Admins pass."""
    principal = require_authenticated(context, now=now)
    if principal.user_id != owner_id and principal.role != Role.ADMIN:
        raise Forbidden("Not the owner of this resource", code="NOT_OWNER")
    return principal


def require_payment_access(context: Optional[RequestContext], payer_id: str,
                           now: Optional[datetime] = None) -> Principal:
    """Payment details are visible to the payer, admins and support staff."""
    principal = require_authenticated(context, now=now)
    if principal.user_id == payer_id or principal.role in (Role.ADMIN, Role.SUPPORT):
        return principal
    raise Forbidden("No access to this payment", code="PAYMENT_ACCESS_DENIED")


def require_verified(principal: Principal) -> Principal:
    if principal.verification != VerificationState.VERIFIED:
        raise Forbidden("Account verification required", code="VERIFICATION_REQUIRED")
    return principal


def sanitize_for_logging(data: Any) -> Any:
    """Deep copy of data with credential-like fields redacted."""
    if isinstance(data, Mapping):
        return {
            key: REDACTED if str(key).lower() in SENSITIVE_FIELDS else sanitize_for_logging(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return type(data)(sanitize_for_logging(item) for item in data)
    return data

# ============================================
# TOKEN REGISTRY
# ============================================

class TokenRegistry:
    """Bearer token -> session lookup (in-memory; issuance lives elsewhere)."""

    def __init__(self):
        self._sessions: Dict[str, RequestContext] = {}
        self._lock = threading.Lock()

    def issue(self, token: str, principal: Principal, expires_at: Optional[datetime] = None) -> RequestContext:
        context = RequestContext(principal=principal, token=token, expires_at=expires_at)
        with self._lock:
            self._sessions[token] = context
        return context

    def revoke(self, token: str):
        with self._lock:
            context = self._sessions.get(token)
            if context is not None:
                self._sessions[token] = RequestContext(
                    principal=context.principal,
                    token=context.token,
                    expires_at=context.expires_at,
                    revoked=True
                )

    def resolve(self, authorization: Optional[str]) -> RequestContext:
        """Context for an Authorization header value. Unknown tokens yield an empty context."""
        if not authorization:
            return RequestContext()
        scheme, _, token = authorization.partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return RequestContext()
        with self._lock:
            return self._sessions.get(token.strip(), RequestContext())
