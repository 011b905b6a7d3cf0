from __future__ import annotations

import re

from sqlalchemy.ext.asyncio import AsyncSession

from .models import Customer

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_PHONE_CHARS_RE = re.compile(r"^[0-9+()\-.\s]+$")


def normalize_email(raw: str | None) -> str | None:
    """Lowercased, trimmed email, or None when blank. Raises ValueError when malformed."""
    if raw is None:
        return None
    email = raw.strip().lower()
    if not email:
        return None
    if not _EMAIL_RE.match(email):
        raise ValueError("Customer email is not a valid address")
    return email


def normalize_phone(raw: str) -> str:
    """Trimmed phone with inner whitespace collapsed. Raises ValueError when unusable."""
    phone = " ".join(raw.split())
    digits = re.sub(r"\D", "", phone)
    if not _PHONE_CHARS_RE.match(phone) or len(digits) < 7 or len(phone) > 20:
        raise ValueError("Customer phone must have between 7 and 20 characters and at least 7 digits")
    return phone


async def create_customer(
    session: AsyncSession,
    shop_id: int,
    name: str,
    phone: str,
    email: str | None,
) -> Customer:
    """
    Insert a new customer row for this booking.

    Customers are not deduplicated: repeat visitors get a row per booking and
    are linked later by matching phone or email.
    """
    customer = Customer(shop_id=shop_id, name=name, phone=phone, email=email)
    session.add(customer)
    await session.flush()
    return customer
