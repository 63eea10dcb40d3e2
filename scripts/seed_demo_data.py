"""
Seed the local database with a demo admin, client and executor, plus one
pending order the executor can pick up.

Usage:
  python scripts/seed_demo_data.py

Idempotent: accounts are looked up by phone/email and reused, and a new
order is only created when the demo client has none open.
"""

from datetime import date, timedelta
from decimal import Decimal

from haulhub.db import SessionLocal
from haulhub.main import init_db
from haulhub.models.models import Order, User
from haulhub.services import accounts, orders


DOCS = {
    "passport_photo_uri": "local://documents/demo/passport.jpg",
    "driver_license_photo_uri": "local://documents/demo/license.jpg",
    "vehicle_registration_photo_uri": "local://documents/demo/registration.jpg",
}


def ensure_user(session, role: str, email: str, phone: str, name: str, password: str, **role_fields) -> User:
    user = session.query(User).filter((User.email == email) | (User.phone == phone)).first()
    if user:
        if role not in user.role_names:
            accounts.add_role(session, user, role, **role_fields)
        return user
    return accounts.register(session, role=role, phone=phone, email=email, name=name, password=password, **role_fields)


def main() -> None:
    # Tables and role rows
    init_db()

    session = SessionLocal()
    try:
        admin = ensure_user(session, "client", "admin@example.com", "+79000000001", "Admin User", "TestAdmin123!")
        accounts.grant_admin(session, admin)

        client = ensure_user(
            session, "client", "client@example.com", "+79000000002", "Clara Client", "TestUser123!",
            address={"city": "Moscow", "street": "Tverskaya", "house_number": "7"},
        )
        executor = ensure_user(
            session, "executor", "driver@example.com", "+79000000003", "Dmitry Driver", "TestUser123!",
            vehicle_capacity=5, vehicle_number="A777AA77", **DOCS,
        )
        profile = executor.executor_profile
        if not profile.is_verified:
            accounts.verify_executor(session, admin, executor.id)
        if profile.balance < Decimal("1000"):
            profile.balance = Decimal("1000")
            session.commit()

        has_open = (
            session.query(Order)
            .filter(Order.client_id == client.id, Order.status == "pending")
            .first()
        )
        if not has_open:
            orders.create_order(
                session, client,
                vehicle_capacity=5, city="Moscow", street="Tverskaya", house_number="7",
                scheduled_date=date.today() + timedelta(days=1), scheduled_time="10:00",
                comment="Old furniture, 3rd floor, no lift",
            )

        print("Seed completed: admin, client, executor and a pending order.")
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


if __name__ == "__main__":
    main()
