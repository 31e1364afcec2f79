"""
Caller identity.

Identity is issued and verified upstream (gateway). The gateway forwards it
as headers together with X-Internal-Token; without a matching token the
request is treated as anonymous public traffic.

Headers:
- X-Internal-Token: shared secret (settings.internal_token)
- X-User-Id: authenticated user id
- X-Company-Id: company claim of the user (optional)
- X-Real-IP: client address for rate limiting
"""

import hmac
import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from .services.errors import InvalidArgument, PermissionDenied, Unauthenticated

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Caller:
    uid: Optional[str] = None
    company_id: Optional[str] = None
    ip: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return bool(self.uid)

    @property
    def limiter_key(self) -> str:
        return self.uid or self.ip or "anon"


ANONYMOUS = Caller()


def _token_matches(sent: str | None, expected: str) -> bool:
    if not sent or not expected:
        return False
    return hmac.compare_digest(sent.encode(), expected.encode())


def get_caller(request: Request) -> Caller:
    """FastAPI dependency: build the Caller from forwarded identity headers."""
    headers = request.headers
    ip = headers.get("X-Real-IP") or (request.client.host if request.client else None)

    expected = request.app.state.settings.internal_token
    if not _token_matches(headers.get("X-Internal-Token"), expected):
        if headers.get("X-User-Id"):
            logger.warning(f"Identity headers without valid internal token from ip={ip}")
        return Caller(ip=ip)

    return Caller(
        uid=(headers.get("X-User-Id") or "").strip() or None,
        company_id=(headers.get("X-Company-Id") or "").strip() or None,
        ip=ip,
    )


def require_authenticated(caller: Caller) -> Caller:
    if not caller.authenticated:
        raise Unauthenticated()
    return caller


def check_company_claim(caller: Caller, company_id: str) -> str:
    """A caller bound to a company may only act on that company."""
    if caller.company_id and caller.company_id != company_id:
        raise PermissionDenied()
    return company_id


def require_internal_token(request: Request) -> None:
    """FastAPI dependency for /internal/* endpoints."""
    expected = request.app.state.settings.internal_token
    if not _token_matches(request.headers.get("X-Internal-Token"), expected):
        raise Unauthenticated("Internal token required")


def resolve_company_id(caller: Caller, company_id: str | None) -> str:
    """Requested company, else the caller's claim; must match the claim when both exist."""
    value = (company_id or "").strip() or caller.company_id
    if not value:
        raise InvalidArgument("companyId required")
    return check_company_claim(caller, value)
