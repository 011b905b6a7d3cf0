"""
Caller Context Module

Identity and sessions are owned by the gateway in front of this service. By
the time a request reaches us the caller has already been authenticated and
the gateway forwards the resolved identity in trusted headers:

    X-Caller-Role   admin | staff | customer
    X-Caller-Id     staff id (required for the staff role)
    X-Caller-Email  verified email (required for the customer role)

This module turns those headers into a CallerContext. Nothing here decides
what a caller may do; the lifecycle and review modules enforce that.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from fastapi import HTTPException, Request, status

logger = logging.getLogger(__name__)


class CallerRole(str, Enum):
    ADMIN = "admin"
    STAFF = "staff"
    CUSTOMER = "customer"


@dataclass(frozen=True)
class CallerContext:
    """
    Resolved caller identity.

    Attributes:
        role: What the caller is allowed to act as
        staff_id: Set for staff callers; matched against appointment ownership
        email: Verified email for customers; matched against customer records
    """
    role: CallerRole
    staff_id: Optional[int] = None
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == CallerRole.ADMIN

    @property
    def normalized_email(self) -> Optional[str]:
        return self.email.strip().lower() if self.email and self.email.strip() else None

    def can_manage(self, appointment_staff_id: int) -> bool:
        """
        Admins manage every appointment; staff only their own.

        Admin identity carries no shop: the gateway fronts a single shop, so
        an admin caller is trusted for whichever shop_id the route names.
        Binding admins to a shop needs a shop claim in the gateway headers.
        """
        if self.is_admin:
            return True
        return self.role == CallerRole.STAFF and self.staff_id == appointment_staff_id


def resolve_caller_context(request: Request, require_auth: bool = True) -> Optional[CallerContext]:
    """
    Resolve the caller from gateway headers.

    Returns None for anonymous requests when require_auth is False.

    Raises:
        HTTPException 401: No caller role supplied and auth is required
        HTTPException 400: Headers present but inconsistent
    """
    raw_role = (request.headers.get("X-Caller-Role") or "").strip().lower()
    if not raw_role:
        if require_auth:
            logger.warning("Authentication failed: no caller role forwarded")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Authentication required. Please sign in.",
            )
        return None

    try:
        role = CallerRole(raw_role)
    except ValueError:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unknown caller role: {raw_role}",
        )

    staff_id: Optional[int] = None
    raw_id = (request.headers.get("X-Caller-Id") or "").strip()
    if raw_id:
        try:
            staff_id = int(raw_id)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="X-Caller-Id must be a staff id.",
            )

    if role == CallerRole.STAFF and staff_id is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Staff callers must include X-Caller-Id.",
        )

    email = (request.headers.get("X-Caller-Email") or "").strip() or None

    ctx = CallerContext(role=role, staff_id=staff_id, email=email)
    logger.debug(f"Resolved caller role={ctx.role.value} staff_id={ctx.staff_id}")
    return ctx


async def get_caller_context(request: Request) -> CallerContext:
    """
    FastAPI dependency for authenticated routes.

        @router.post("/appointments/{appointment_id}/status")
        async def handler(caller: CallerContext = Depends(get_caller_context)):
            ...
    """
    return resolve_caller_context(request, require_auth=True)


async def get_optional_caller_context(request: Request) -> Optional[CallerContext]:
    """FastAPI dependency for routes that also serve anonymous visitors."""
    return resolve_caller_context(request, require_auth=False)
