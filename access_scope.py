"""
Role based visibility.

Every tracking and reporting read asks this module which user ids the caller
may see:

- employee: only themselves
- team_lead: themselves and their direct reports. For reassignment the lead
  also sees everyone in their region.
- admin: everyone
"""
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Iterable, Optional, Union

from models import ROLE_ADMIN, ROLE_TEAM_LEAD, User

PURPOSE_DEFAULT = "default"
PURPOSE_REASSIGNMENT = "reassignment"

# Matches nothing when used inside an `$in` filter
_NO_USERS: FrozenSet[str] = frozenset()


@dataclass(frozen=True)
class AccessScope:
    caller_id: str
    unrestricted: bool = False
    user_ids: FrozenSet[str] = field(default_factory=frozenset)

    def allows(self, user_id: Optional[str]) -> bool:
        if user_id is None:
            return False
        return self.unrestricted or user_id in self.user_ids

    def supervises(self, user_id: Optional[str]) -> bool:
        """True for users in scope other than the caller; admins supervise everyone."""
        if self.unrestricted:
            return user_id is not None
        return user_id != self.caller_id and self.allows(user_id)

    def narrow(self, user_id: Optional[str]) -> "AccessScope":
        """Restrict the scope to one user. Outside the scope the result is empty."""
        if not user_id:
            return self
        if self.allows(user_id):
            return AccessScope(self.caller_id, False, frozenset([user_id]))
        return AccessScope(self.caller_id, False, _NO_USERS)

    def mongo_filter(self, field_name: str = "user_id") -> Dict[str, Any]:
        if self.unrestricted:
            return {}
        return {field_name: {"$in": sorted(self.user_ids)}}


def _get(member: Union[User, Dict[str, Any]], key: str):
    if isinstance(member, dict):
        return member.get(key)
    return getattr(member, key, None)


def resolve_scope(caller: User, roster: Iterable[Union[User, Dict[str, Any]]] = (),
                  purpose: str = PURPOSE_DEFAULT) -> AccessScope:
    """Compute the visible user ids for `caller` given the user roster."""
    if caller.role == ROLE_ADMIN:
        return AccessScope(caller.id, unrestricted=True)

    visible = {caller.id}
    if caller.role == ROLE_TEAM_LEAD:
        for member in roster:
            member_id = _get(member, "id")
            if not member_id:
                continue
            if _get(member, "reports_to") == caller.id:
                visible.add(member_id)
            elif (purpose == PURPOSE_REASSIGNMENT and caller.region_id
                  and _get(member, "region_id") == caller.region_id):
                visible.add(member_id)
    return AccessScope(caller.id, False, frozenset(visible))


def personal_scope(caller: User) -> AccessScope:
    """Admins see everyone, everyone else only themselves."""
    if caller.role == ROLE_ADMIN:
        return AccessScope(caller.id, unrestricted=True)
    return AccessScope(caller.id, False, frozenset([caller.id]))


async def load_scope(db, caller: User, purpose: str = PURPOSE_DEFAULT) -> AccessScope:
    """Resolve the scope, reading the roster only for roles that need it."""
    if caller.role != ROLE_TEAM_LEAD:
        return resolve_scope(caller, (), purpose)

    query: Dict[str, Any] = {"reports_to": caller.id}
    if purpose == PURPOSE_REASSIGNMENT and caller.region_id:
        query = {"$or": [{"reports_to": caller.id}, {"region_id": caller.region_id}]}
    roster = await db.users.find(
        query, {"_id": 0, "id": 1, "reports_to": 1, "region_id": 1}
    ).to_list(10000)
    return resolve_scope(caller, roster, purpose)
