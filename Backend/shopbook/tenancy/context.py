"""
Shop context for tenant isolation.

Every scheduling, booking and review operation runs inside exactly one shop.
The ShopContext carries the shop id plus its canonical clock (IANA timezone),
which is what turns a calendar date into concrete instants.
"""

import logging
from dataclasses import dataclass
from typing import Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy.ext.asyncio import AsyncSession

from ..models import Shop


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ShopContext:
    """
    Immutable context representing the current tenant for a request.

    Attributes:
        shop_id: The database ID of the shop (shops.id)
        shop_name: Human-readable shop name
        timezone: IANA timezone string (e.g., "America/Montevideo")
    """

    shop_id: int
    shop_name: Optional[str] = None
    timezone: str = "UTC"

    def __post_init__(self):
        if self.shop_id <= 0:
            raise ValueError(f"shop_id must be positive, got {self.shop_id}")

    @property
    def tz(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError:
            logger.warning(f"Unknown timezone '{self.timezone}' for shop {self.shop_id}, using UTC")
            return ZoneInfo("UTC")


async def resolve_shop_context(session: AsyncSession, shop_id: int) -> Optional[ShopContext]:
    """Load the shop and build its context. Returns None if the shop does not exist."""
    if shop_id <= 0:
        return None
    shop = await session.get(Shop, shop_id)
    if not shop:
        logger.debug(f"Shop not found: shop_id={shop_id}")
        return None
    return ShopContext(shop_id=shop.id, shop_name=shop.name, timezone=shop.timezone)
