#!/usr/bin/env python3
"""
Seed a demo roster for local development and print bearer tokens for it
"""
import asyncio
from typing import List

from motor.motor_asyncio import AsyncIOMotorClient

import config
from auth import create_access_token
from models import ROLE_ADMIN, ROLE_EMPLOYEE, ROLE_TEAM_LEAD, User, to_document

DEMO_REGION = "region-utrecht"


def build_demo_roster() -> List[User]:
    """An admin, a team lead with two direct reports, and one employee reporting to another lead."""
    admin = User(id="demo-admin", email="admin@example.com", first_name="Ada", last_name="Admin", role=ROLE_ADMIN)
    lead = User(id="demo-lead", email="lead@example.com", first_name="Lars", last_name="Lead",
                role=ROLE_TEAM_LEAD, region_id=DEMO_REGION)
    other_lead = User(id="demo-lead-2", email="lead2@example.com", first_name="Lotte", last_name="Lead",
                      role=ROLE_TEAM_LEAD, region_id="region-amsterdam")
    reports = [
        User(id="demo-employee-1", email="employee1@example.com", first_name="Jan", last_name="Jansen",
             role=ROLE_EMPLOYEE, region_id=DEMO_REGION, reports_to=lead.id),
        User(id="demo-employee-2", email="employee2@example.com", first_name="Piet", last_name="de Vries",
             role=ROLE_EMPLOYEE, region_id=DEMO_REGION, reports_to=lead.id),
    ]
    outsider = User(id="demo-employee-3", email="employee3@example.com", first_name="Sara", last_name="Smit",
                    role=ROLE_EMPLOYEE, region_id=DEMO_REGION, reports_to=other_lead.id)
    return [admin, lead, other_lead, *reports, outsider]


async def seed_data(db=None, verbose: bool = True):
    if db is None:
        client = AsyncIOMotorClient(config.MONGO_URL, serverSelectionTimeoutMS=30000)
        db = client[config.DB_NAME]

    if verbose:
        print("🌱 Starting data seeding...")

    created = 0
    tokens = {}
    for user in build_demo_roster():
        existing = await db.users.find_one({"id": user.id})
        if not existing:
            await db.users.insert_one(to_document(user))
            created += 1
            if verbose:
                print(f"  ✅ Created {user.role}: {user.full_name} ({user.email})")
        elif verbose:
            print(f"  ⏭️  {user.email} already exists")
        tokens[user.email] = create_access_token({"sub": user.id})

    if verbose:
        print(f"\n✅ Data seeding complete! {created} users created")
        print("\nBearer tokens:")
        for email, token in tokens.items():
            print(f"  {email}: {token}")
    return tokens


if __name__ == "__main__":
    asyncio.run(seed_data())
