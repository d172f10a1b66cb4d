"""
Per-user, per-day rollups.

All writes are a single upsert with `$inc`, so concurrent contributions for
the same user and day add up instead of overwriting each other.
"""
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

from access_scope import AccessScope
from models import DailySummary

logger = logging.getLogger(__name__)

# increment() keyword -> stored field
_FIELDS = {
    "distance_km": "total_distance_km",
    "hours": "total_hours",
    "visits": "total_visits",
    "business": "total_business",
    "check_ins": "check_in_count",
}


def day_key(day: Union[date, datetime, str]) -> str:
    if isinstance(day, str):
        return day[:10]
    if isinstance(day, datetime):
        return day.date().isoformat()
    return day.isoformat()


async def increment(db, user_id: str, day: Union[date, datetime, str], **delta) -> bool:
    """Add `delta` to the user's summary for `day`, creating the row if needed.

    Accepted keys: distance_km, hours, visits, business, check_ins.
    Failures are logged and swallowed: the caller's primary write has already
    been committed. Returns whether the increment was applied.
    """
    unknown = set(delta) - set(_FIELDS)
    if unknown:
        raise TypeError(f"Unknown daily summary fields: {sorted(unknown)}")

    inc = {_FIELDS[k]: v for k, v in delta.items() if v}
    if not inc:
        return True

    key = day_key(day)
    try:
        await db.daily_summaries.update_one(
            {"user_id": user_id, "date": key},
            {"$inc": inc},
            upsert=True,
        )
        return True
    except Exception:
        logger.exception(f"Failed to update daily summary for user {user_id} on {key}")
        return False


async def get_summary(db, user_id: str, day: Union[date, datetime, str]) -> Optional[DailySummary]:
    doc = await db.daily_summaries.find_one({"user_id": user_id, "date": day_key(day)}, {"_id": 0})
    return DailySummary(**doc) if doc else None


async def list_summaries(db, scope: AccessScope, start_date: Optional[str] = None,
                         end_date: Optional[str] = None, user_id: Optional[str] = None,
                         limit: int = 1000) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = dict(scope.narrow(user_id).mongo_filter("user_id"))
    date_filter = {}
    if start_date:
        date_filter["$gte"] = day_key(start_date)
    if end_date:
        date_filter["$lte"] = day_key(end_date)
    if date_filter:
        query["date"] = date_filter

    docs = await db.daily_summaries.find(
        query, {"_id": 0}, sort=[("date", -1), ("user_id", 1)], limit=limit
    ).to_list(limit)
    return [DailySummary(**d).model_dump() for d in docs]
