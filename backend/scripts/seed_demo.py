"""CLI script that creates a demo gym to click around in.

Creates a gym with an admin account, plans from the suggested templates,
a trainer with one class, a few clients with memberships and payments
(one of them behind on payments) and a couple of store products.

Usage: python scripts/seed_demo.py [--email EMAIL] [--password PASSWORD]
"""
import sys
import argparse
import pathlib
from datetime import date, timedelta
# Ensure `backend/` is on sys.path so `gymdesk` package imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from sqlmodel import Session
from gymdesk import billing, services
from gymdesk.database import engine, create_db_and_tables

DEMO_CLIENTS = [
    {"name": "Ana Gómez", "email": "ana@example.com", "phone": "3001112233", "document_id": "1020304050"},
    {"name": "Carlos Ruiz", "email": "carlos@example.com", "phone": "3004445566", "document_id": "1122334455"},
    {"name": "Laura Díaz", "email": "laura@example.com", "phone": "3007778899", "document_id": "9988776655"},
]


def main(email: str = "admin@demo.gym", password: str = "demo1234", today=None):
    """Seed the demo data and print what was created.

    Fails with a message when an account with `email` already exists.
    """
    today = today or date.today()
    create_db_and_tables()
    with Session(engine, expire_on_commit=False) as session:
        try:
            gym, admin = services.AuthService(session).register_gym("Demo Gym", email, "Demo Admin", password)
        except services.ConflictError:
            print(f'An account for {email} already exists; nothing to do')
            return None

        plans = services.MembershipTypeService(session, admin)
        monthly = plans.create_from_template("monthly-basic")
        plans.create_from_template("monthly-full")
        plans.create_from_template("day-pass")

        trainer = services.TrainerService(session, admin).create({"name": "Pedro Trainer", "specialization": "Functional"})
        gym_class = services.ClassService(session, admin).create({
            "name": "Morning functional", "trainer_id": trainer.id, "days_of_week": [1, 3, 5],
            "start_time": "06:30", "duration": 60, "capacity": 15, "requires_membership": True,
        })

        clients = services.ClientService(session, admin)
        memberships = services.MembershipService(session, admin)
        payments = services.PaymentService(session, admin)
        for offset, data in enumerate(DEMO_CLIENTS):
            client = clients.create(dict(data))
            start = today - timedelta(days=60 - offset * 20)
            membership = memberships.create(
                {"client_id": client.id, "membership_type_id": monthly.id, "start_date": start, "periods": 6}, today,
            )
            periods = billing.billing_periods(start, membership.end_date, monthly.duration_days, today)
            if offset == len(DEMO_CLIENTS) - 1:
                # the last client stays one period behind
                periods = periods[:-1]
            for period in periods:
                payments.record({
                    "client_id": client.id, "membership_id": membership.id, "amount": monthly.price,
                    "method": "cash", "payment_date": period.start, "payment_month": period.month,
                }, today)
            services.ClassService(session, admin).enroll(gym_class.id, client.id, today)
            print(f'Created client {client.name} with membership {membership.id}')

        products = services.ProductService(session, admin)
        products.create({"name": "Whey protein 2lb", "price": 95000, "category": "supplement", "stock": 12})
        products.create({"name": "Water 600ml", "price": 2500, "category": "beverage", "stock": 48})

        print(f'Demo gym {gym.id} ready. Sign in as {email} / {password}')
        return gym


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('--email', default='admin@demo.gym', help='Admin email for the demo gym')
    parser.add_argument('--password', default='demo1234', help='Admin password for the demo gym')
    args = parser.parse_args()
    main(email=args.email, password=args.password)
