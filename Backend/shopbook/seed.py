from datetime import time

from sqlalchemy import select

from .models import Service, Shop, Staff, StaffRole, StaffService, WorkingHours


DEMO_SHOP_NAME = "Demo Barbershop"
DEMO_OPEN = time(9, 0)
DEMO_CLOSE = time(17, 0)
DEMO_WORKING_DAYS = range(0, 6)  # Monday..Saturday


async def seed_initial_data(session, shop_name: str = DEMO_SHOP_NAME, timezone: str = "UTC") -> Shop:
    result = await session.execute(select(Shop).where(Shop.name == shop_name))
    shop = result.scalar_one_or_none()

    if not shop:
        shop = Shop(name=shop_name, timezone=timezone)
        session.add(shop)
        await session.flush()

    # Seed services if missing
    result = await session.execute(select(Service).where(Service.shop_id == shop.id))
    services = result.scalars().all()
    if not services:
        services = [
            Service(shop_id=shop.id, name="Haircut", duration_minutes=30, price_cents=3500),
            Service(shop_id=shop.id, name="Beard Trim", duration_minutes=30, price_cents=2000),
            Service(shop_id=shop.id, name="Haircut + Beard", duration_minutes=60, price_cents=5000),
        ]
        session.add_all(services)
        await session.flush()

    result = await session.execute(select(Staff).where(Staff.shop_id == shop.id))
    staff = result.scalars().all()
    if not staff:
        staff = [
            Staff(shop_id=shop.id, name="Alex", role=StaffRole.ADMIN),
            Staff(shop_id=shop.id, name="Sam", role=StaffRole.STAFF),
        ]
        session.add_all(staff)
        await session.flush()

        for member in staff:
            session.add_all(
                [StaffService(staff_id=member.id, service_id=service.id) for service in services]
            )
            session.add_all(
                [
                    WorkingHours(
                        shop_id=shop.id,
                        staff_id=member.id,
                        day_of_week=day,
                        start_time=DEMO_OPEN,
                        end_time=DEMO_CLOSE,
                    )
                    for day in DEMO_WORKING_DAYS
                ]
            )

    await session.commit()
    return shop
