import asyncio

from access_scope import PURPOSE_REASSIGNMENT, load_scope, personal_scope, resolve_scope
from seed_data import build_demo_roster


def _users():
    return {u.id: u for u in build_demo_roster()}


def test_employee_sees_only_self():
    users = _users()
    scope = resolve_scope(users["demo-employee-1"], users.values())
    assert scope.user_ids == {"demo-employee-1"}
    assert not scope.allows("demo-employee-2")
    assert scope.mongo_filter() == {"user_id": {"$in": ["demo-employee-1"]}}


def test_team_lead_sees_self_and_direct_reports():
    users = _users()
    scope = resolve_scope(users["demo-lead"], users.values())
    assert scope.user_ids == {"demo-lead", "demo-employee-1", "demo-employee-2"}
    # Same region, but reports to someone else
    assert not scope.allows("demo-employee-3")


def test_team_lead_reassignment_includes_region():
    users = _users()
    scope = resolve_scope(users["demo-lead"], users.values(), PURPOSE_REASSIGNMENT)
    assert scope.allows("demo-employee-3")
    assert not scope.allows("demo-lead-2")


def test_admin_is_unrestricted():
    users = _users()
    scope = resolve_scope(users["demo-admin"], users.values())
    assert scope.unrestricted
    assert scope.allows("anyone")
    assert scope.mongo_filter() == {}


def test_narrow_outside_scope_is_empty():
    users = _users()
    scope = resolve_scope(users["demo-lead"], users.values())
    assert scope.narrow("demo-employee-1").user_ids == {"demo-employee-1"}
    narrowed = scope.narrow("demo-employee-3")
    assert narrowed.user_ids == set()
    assert narrowed.mongo_filter("user_id") == {"user_id": {"$in": []}}
    assert scope.narrow(None) is scope


def test_admin_narrow_restricts_to_one_user():
    users = _users()
    scope = resolve_scope(users["demo-admin"], users.values()).narrow("demo-employee-3")
    assert not scope.unrestricted
    assert scope.user_ids == {"demo-employee-3"}


def test_allows_none_is_false():
    users = _users()
    assert not resolve_scope(users["demo-admin"]).allows(None)


def test_load_scope_reads_roster_for_leads(db, roster):
    scope = asyncio.run(load_scope(db, roster["demo-lead"]))
    assert scope.user_ids == {"demo-lead", "demo-employee-1", "demo-employee-2"}

    scope = asyncio.run(load_scope(db, roster["demo-lead"], PURPOSE_REASSIGNMENT))
    assert "demo-employee-3" in scope.user_ids


def test_load_scope_employee_skips_database(roster):
    class NoDatabase:
        def __getattr__(self, name):
            raise AssertionError(f"unexpected database access: {name}")

    scope = asyncio.run(load_scope(NoDatabase(), roster["demo-employee-1"]))
    assert scope.user_ids == {"demo-employee-1"}


def test_supervises_excludes_self_and_outsiders():
    users = _users()
    lead = resolve_scope(users["demo-lead"], users.values())
    assert lead.supervises("demo-employee-1")
    assert not lead.supervises("demo-lead")
    assert not lead.supervises("demo-employee-3")
    assert not resolve_scope(users["demo-employee-1"], users.values()).supervises("demo-employee-1")

    admin = resolve_scope(users["demo-admin"], users.values())
    assert admin.supervises("demo-admin")
    assert not admin.supervises(None)


def test_personal_scope():
    users = _users()
    assert personal_scope(users["demo-admin"]).unrestricted
    lead = personal_scope(users["demo-lead"])
    assert lead.user_ids == {"demo-lead"}
    assert lead.mongo_filter() == {"user_id": {"$in": ["demo-lead"]}}
