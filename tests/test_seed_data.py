import asyncio

import jwt

import config
from models import ROLE_ADMIN, ROLE_TEAM_LEAD
from seed_data import build_demo_roster, seed_data


def test_demo_roster_shape():
    roster = {u.id: u for u in build_demo_roster()}
    assert roster["demo-admin"].role == ROLE_ADMIN
    assert roster["demo-lead"].role == ROLE_TEAM_LEAD
    reports = [u for u in roster.values() if u.reports_to == "demo-lead"]
    assert len(reports) == 2
    assert roster["demo-employee-3"].reports_to != "demo-lead"


def test_seed_data_is_idempotent_and_returns_tokens(db, capsys):
    tokens = asyncio.run(seed_data(db))
    asyncio.run(seed_data(db))

    assert asyncio.run(db.users.count_documents({})) == len(build_demo_roster())
    payload = jwt.decode(tokens["admin@example.com"], config.SECRET_KEY, algorithms=[config.ALGORITHM])
    assert payload["sub"] == "demo-admin"
    assert "already exists" in capsys.readouterr().out
