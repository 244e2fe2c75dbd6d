"""
ClinicSession - Database Seed Script

Creates the initial admin account for development.

Usage:
    python -m scripts.seed_users
"""

import asyncio

from clinicsession.auth.container import build_services
from clinicsession.auth.database import get_engine, init_db
from clinicsession.auth.models import Role
from clinicsession.config import settings
from clinicsession.errors import AccountExists


ADMIN_EMAIL = "admin@clinicsession.local"
ADMIN_PASSWORD = "Admin#ClinicSession2024"
DEFAULT_CLINIC = "clinic-dev"

DEMO_ACCOUNTS = [
    ("doctor@clinicsession.local", "Doctor#ClinicSession2024", Role.DOCTOR),
    ("nurse@clinicsession.local", "Nurse#ClinicSession2024", Role.NURSE),
    ("pharmacist@clinicsession.local", "Pharmacist#ClinicSession2024", Role.PHARMACIST),
]


async def seed(accounts):
    """Register each (email, password, role) unless it already exists."""
    engine = get_engine(settings.DATABASE_URL)
    init_db(engine)
    services = build_services(engine)

    try:
        for email, password, role in accounts:
            try:
                await services.credentials.register(email, password, role, DEFAULT_CLINIC)
                print(f"Created account: {email} ({role.value})")
            except AccountExists:
                print(f"Account {email} already exists.")
    finally:
        engine.dispose()


if __name__ == "__main__":
    print("=" * 50)
    print("ClinicSession - Account Seed Script")
    print("=" * 50)

    asyncio.run(seed([(ADMIN_EMAIL, ADMIN_PASSWORD, Role.ADMIN)]))

    print()
    response = input("Create demo accounts for clinical roles? (y/n): ")
    if response.lower() == "y":
        asyncio.run(seed(DEMO_ACCOUNTS))

    print()
    print("Done!")
