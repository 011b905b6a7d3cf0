"""
Shared test data builders.

TARGET_DATE is two weeks out so that HTTP tests, which run against the wall
clock, always see it as bookable. Core tests pass NOW explicitly.
"""
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Optional

from shopbook.models import (
    Appointment,
    AppointmentStatus,
    Customer,
    Service,
    Shop,
    Staff,
    StaffRole,
    StaffService,
    WorkingHours,
)

TARGET_DATE = date.today() + timedelta(days=14)
NOW = datetime.combine(TARGET_DATE - timedelta(days=1), time(12, 0), tzinfo=timezone.utc)


def at(hour: int, minute: int = 0, day: date = TARGET_DATE) -> datetime:
    """UTC instant on the target date."""
    return datetime.combine(day, time(hour, minute), tzinfo=timezone.utc)


@dataclass(frozen=True)
class Catalog:
    shop_id: int
    staff1_id: int
    staff2_id: int
    service_id: int
    long_service_id: int


async def create_catalog(session, shop_name: str = "Test Shop", timezone_name: str = "UTC") -> Catalog:
    shop = Shop(name=shop_name, timezone=timezone_name)
    session.add(shop)
    await session.flush()

    haircut = Service(shop_id=shop.id, name="Haircut", duration_minutes=30, price_cents=3500)
    color = Service(shop_id=shop.id, name="Color", duration_minutes=60, price_cents=9000)
    s1 = Staff(shop_id=shop.id, name="S1", role=StaffRole.STAFF)
    s2 = Staff(shop_id=shop.id, name="S2", role=StaffRole.STAFF)
    session.add_all([haircut, color, s1, s2])
    await session.flush()

    for member in (s1, s2):
        session.add_all(
            [
                StaffService(staff_id=member.id, service_id=haircut.id),
                StaffService(staff_id=member.id, service_id=color.id),
            ]
        )
        session.add_all(
            [
                WorkingHours(
                    shop_id=shop.id,
                    staff_id=member.id,
                    day_of_week=day,
                    start_time=time(9, 0),
                    end_time=time(17, 0),
                )
                for day in range(7)
            ]
        )
    await session.commit()

    return Catalog(
        shop_id=shop.id,
        staff1_id=s1.id,
        staff2_id=s2.id,
        service_id=haircut.id,
        long_service_id=color.id,
    )


async def add_appointment(
    session,
    catalog: Catalog,
    start_at: datetime,
    status: AppointmentStatus = AppointmentStatus.PENDING,
    staff_id: Optional[int] = None,
    email: Optional[str] = "ana@example.com",
    minutes: int = 30,
) -> Appointment:
    """
    Insert an appointment directly, bypassing the booking rules.

    The row is returned detached so that a later rollback on the same session
    does not expire it.
    """
    customer = Customer(shop_id=catalog.shop_id, name="Ana", phone="555-0100", email=email)
    session.add(customer)
    await session.flush()

    appointment = Appointment(
        shop_id=catalog.shop_id,
        staff_id=staff_id or catalog.staff1_id,
        customer_id=customer.id,
        service_id=catalog.service_id,
        start_at=start_at,
        end_at=start_at + timedelta(minutes=minutes),
        price_cents=3500,
        status=status,
    )
    session.add(appointment)
    await session.commit()
    session.expunge(appointment)
    return appointment
