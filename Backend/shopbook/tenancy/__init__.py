"""
Multi-tenancy package.

Modules:
    context: ShopContext resolution (shop id + canonical clock)
    queries: Tenant-scoped query helpers
"""

from .context import (
    ShopContext,
    resolve_shop_context,
)

from .queries import (
    # Composable helpers
    scoped_select,
    require_owned,
    # Service / staff queries
    get_active_service,
    get_active_staff,
    staff_can_perform,
    list_capable_staff,
    # Calendar queries
    list_working_hours,
    list_time_off_in_range,
    # Appointment queries
    get_appointment_by_id,
    get_review_for_appointment,
    get_invite_by_token_hash,
    list_blocking_appointments,
)

__all__ = [
    "ShopContext",
    "resolve_shop_context",
    "scoped_select",
    "require_owned",
    "get_active_service",
    "get_active_staff",
    "staff_can_perform",
    "list_capable_staff",
    "list_working_hours",
    "list_time_off_in_range",
    "get_appointment_by_id",
    "get_review_for_appointment",
    "get_invite_by_token_hash",
    "list_blocking_appointments",
]
