"""
Daily, weekly and monthly GPS performance reports for one user.

Figures are computed from the stored sessions (distance, duration) and the
speeds their samples reported. The `daily_summaries` rows for the same range
are returned next to them as `recorded`.

Days are UTC calendar days of the session check-in; weeks start on Monday.
"""
import logging
from datetime import date, timedelta
from typing import Any, Dict, List, Optional, Tuple

import daily_summary
from access_scope import AccessScope, load_scope
from errors import Forbidden, NotFound, ValidationFailed
from models import User, parse_dt, utcnow

logger = logging.getLogger(__name__)

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
MIN_YEAR = 2020
BUSINESS_HOURS = (8, 18)  # check-in hour, UTC


def parse_day(value: Optional[str], field_name: str = "date") -> date:
    if not value:
        return utcnow().date()
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise ValidationFailed(f"Invalid {field_name}, expected YYYY-MM-DD")


def week_start_of(day: date) -> date:
    return day - timedelta(days=day.weekday())


def month_bounds(month: int, year: int) -> Tuple[date, date]:
    first = date(year, month, 1)
    next_first = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return first, next_first - timedelta(days=1)


def session_hours(session: Dict[str, Any]) -> Optional[float]:
    """Check-in to check-out in hours, None while the session is open."""
    if not session.get("check_out"):
        return None
    elapsed = parse_dt(session["check_out"]) - parse_dt(session["check_in"])
    return max(elapsed.total_seconds(), 0) / 3600


def _on_day(session: Dict[str, Any], day: date) -> bool:
    return session["check_in"][:10] == day.isoformat()


def performance_metrics(sessions: List[Dict[str, Any]], speeds: Dict[str, List[float]]) -> Dict[str, Any]:
    if not sessions:
        return {
            "totalKm": 0, "totalSessions": 0, "avgSessionDuration": 0, "avgSpeed": 0,
            "maxSpeed": 0, "efficiency": 0, "activeHours": 0,
        }

    total_km = sum(s.get("total_distance_km") or 0 for s in sessions)
    active_hours = sum(h for h in (session_hours(s) for s in sessions) if h is not None)
    reported = [v for s in sessions for v in speeds.get(s["id"], [])]

    return {
        "totalKm": round(total_km, 3),
        "totalSessions": len(sessions),
        "avgSessionDuration": round(active_hours / len(sessions), 2),
        "avgSpeed": round(sum(reported) / len(reported), 2) if reported else 0,  # km/h
        "maxSpeed": round(max(reported), 2) if reported else 0,
        "efficiency": round(total_km / active_hours, 2) if active_hours > 0 else 0,  # km per hour
        "activeHours": round(active_hours, 2),
    }


def daily_stats(sessions: List[Dict[str, Any]], speeds: Dict[str, List[float]], day: date) -> Dict[str, Any]:
    day_sessions = [s for s in sessions if _on_day(s, day)]
    metrics = performance_metrics(day_sessions, speeds)
    return {
        "date": day.isoformat(),
        "totalKm": metrics["totalKm"],
        "sessions": metrics["totalSessions"],
        "avgSpeed": metrics["avgSpeed"],
        "efficiency": metrics["efficiency"],
        "activeHours": metrics["activeHours"],
        "checkInCount": len(day_sessions),
    }


def weekly_stats(sessions: List[Dict[str, Any]], speeds: Dict[str, List[float]], week_start: date) -> Dict[str, Any]:
    days = [daily_stats(sessions, speeds, week_start + timedelta(days=i)) for i in range(7)]
    worked = [d for d in days if d["activeHours"] > 0]
    return {
        "weekStart": week_start.isoformat(),
        "weekEnd": (week_start + timedelta(days=6)).isoformat(),
        "dailyStats": days,
        "totalKm": round(sum(d["totalKm"] for d in days), 3),
        "avgEfficiency": round(sum(d["efficiency"] for d in worked) / len(worked), 2) if worked else 0,
        "totalSessions": sum(d["sessions"] for d in days),
        "totalActiveHours": round(sum(d["activeHours"] for d in days), 2),
    }


def monthly_stats(sessions: List[Dict[str, Any]], speeds: Dict[str, List[float]],
                  month: int, year: int) -> Dict[str, Any]:
    """Weeks overlapping the month. Month totals only count days inside the month."""
    first, last = month_bounds(month, year)

    weeks = []
    current = week_start_of(first)
    while current <= last:
        weeks.append(weekly_stats(sessions, speeds, current))
        current += timedelta(days=7)

    in_month = [d for w in weeks for d in w["dailyStats"] if first.isoformat() <= d["date"] <= last.isoformat()]
    worked = [w for w in weeks if w["totalActiveHours"] > 0]
    peak = max(weeks, key=lambda w: w["totalKm"])

    return {
        "month": month,
        "year": year,
        "weeklyStats": weeks,
        "totalKm": round(sum(d["totalKm"] for d in in_month), 3),
        "avgEfficiency": round(sum(w["avgEfficiency"] for w in worked) / len(worked), 2) if worked else 0,
        "totalSessions": sum(d["sessions"] for d in in_month),
        "totalActiveHours": round(sum(d["activeHours"] for d in in_month), 2),
        "peakWeek": {"weekStart": peak["weekStart"] if peak["totalKm"] > 0 else None, "totalKm": peak["totalKm"]},
    }


def period_change(current_km: float, previous_km: float, current_hours: float, previous_hours: float) -> Dict[str, float]:
    return {
        "kmChange": round(current_km - previous_km, 3),
        "kmPercentChange": round((current_km - previous_km) / previous_km * 100, 1) if previous_km > 0 else 0,
        "hoursChange": round(current_hours - previous_hours, 2),
        "hoursPercentChange": (
            round((current_hours - previous_hours) / previous_hours * 100, 1) if previous_hours > 0 else 0
        ),
    }


async def _resolve_target(db, caller: User, user_id: Optional[str]) -> Tuple[AccessScope, Dict[str, Any]]:
    scope = await load_scope(db, caller)
    target = user_id or caller.id
    if not scope.allows(target):
        raise Forbidden("Can only access your team members data")

    doc = await db.users.find_one({"id": target}, {"_id": 0})
    if not doc:
        raise NotFound("User not found")
    user = User(**doc)
    return scope, {"id": user.id, "name": user.full_name, "regionId": user.region_id}


async def _load_sessions(db, user_id: str, start: date, end: date):
    """Sessions checked in between start and end (inclusive), their reported speeds and sample counts."""
    sessions = await db.tracking_sessions.find(
        {"user_id": user_id,
         "check_in": {"$gte": start.isoformat(), "$lt": (end + timedelta(days=1)).isoformat()}},
        {"_id": 0, "route_data": 0},
        sort=[("check_in", 1)],
    ).to_list(None)

    speeds: Dict[str, List[float]] = {}
    counts: Dict[str, int] = {}
    if sessions:
        samples = await db.location_samples.find(
            {"session_id": {"$in": [s["id"] for s in sessions]}},
            {"_id": 0, "session_id": 1, "speed": 1},
        ).to_list(None)
        for sample in samples:
            counts[sample["session_id"]] = counts.get(sample["session_id"], 0) + 1
            speed = sample.get("speed")
            if speed is not None and speed > 0:
                speeds.setdefault(sample["session_id"], []).append(speed)
    return sessions, speeds, counts


async def _previous_totals(db, user_id: str, start: date, end: date) -> Tuple[float, float]:
    sessions, _, _ = await _load_sessions(db, user_id, start, end)
    closed = [s for s in sessions if s.get("check_out")]
    return (sum(s.get("total_distance_km") or 0 for s in closed),
            sum(session_hours(s) for s in closed))


async def _recorded(db, scope: AccessScope, user_id: str, start: date, end: date) -> Dict[str, Any]:
    rows = await daily_summary.list_summaries(db, scope, start.isoformat(), end.isoformat(), user_id)
    return {
        "days": len(rows),
        "totalKm": round(sum(r["total_distance_km"] for r in rows), 3),
        "totalHours": round(sum(r["total_hours"] for r in rows), 2),
        "checkIns": sum(r["check_in_count"] for r in rows),
    }


async def daily_report(db, caller: User, user_id: Optional[str] = None, day: Optional[str] = None) -> Dict[str, Any]:
    scope, user = await _resolve_target(db, caller, user_id)
    target_day = parse_day(day)
    sessions, speeds, counts = await _load_sessions(db, user["id"], target_day, target_day)

    morning = [s for s in sessions if parse_dt(s["check_in"]).hour < 12]
    afternoon = [s for s in sessions if parse_dt(s["check_in"]).hour >= 12]
    business = [s for s in sessions if BUSINESS_HOURS[0] <= parse_dt(s["check_in"]).hour < BUSINESS_HOURS[1]]

    stats = daily_stats(sessions, speeds, target_day)
    stats.update({
        "completedSessions": sum(1 for s in sessions if s.get("check_out")),
        "activeSessions": sum(1 for s in sessions if not s.get("check_out")),
        "businessHoursSessions": len(business),
        "periodBreakdown": {
            "morning": {"sessions": len(morning),
                        "totalKm": round(sum(s.get("total_distance_km") or 0 for s in morning), 3)},
            "afternoon": {"sessions": len(afternoon),
                          "totalKm": round(sum(s.get("total_distance_km") or 0 for s in afternoon), 3)},
        },
    })

    return {
        "date": target_day.isoformat(),
        "user": user,
        "stats": stats,
        "sessions": [
            {
                "id": s["id"],
                "checkIn": s["check_in"],
                "checkOut": s.get("check_out"),
                "totalKm": round(s.get("total_distance_km") or 0, 3),
                "duration": round(session_hours(s) or 0, 2),
                "coordinateCount": counts.get(s["id"], 0),
                "status": s.get("status"),
            }
            for s in sessions
        ],
        "recorded": await _recorded(db, scope, user["id"], target_day, target_day),
        "filters": {"userId": user["id"], "date": target_day.isoformat()},
    }


async def weekly_report(db, caller: User, user_id: Optional[str] = None,
                        week_start: Optional[str] = None) -> Dict[str, Any]:
    scope, user = await _resolve_target(db, caller, user_id)
    start = parse_day(week_start, "weekStart") if week_start else week_start_of(utcnow().date())
    end = start + timedelta(days=6)

    sessions, speeds, _ = await _load_sessions(db, user["id"], start, end)
    stats = weekly_stats(sessions, speeds, start)

    breakdown = [{"dayName": WEEKDAYS[date.fromisoformat(d["date"]).weekday()], **d} for d in stats["dailyStats"]]
    travelled = [d for d in breakdown if d["totalKm"] > 0]
    none = {"dayName": None, "totalKm": 0}
    best = max(travelled, key=lambda d: d["totalKm"]) if travelled else none
    worst = min(travelled, key=lambda d: d["totalKm"]) if travelled else none

    previous_km, previous_hours = await _previous_totals(db, user["id"], start - timedelta(days=7),
                                                         end - timedelta(days=7))
    return {
        "weekStart": stats["weekStart"],
        "weekEnd": stats["weekEnd"],
        "user": user,
        "stats": stats,
        "dailyBreakdown": breakdown,
        "bestDay": {"dayName": best["dayName"], "totalKm": best["totalKm"]},
        "worstDay": {"dayName": worst["dayName"], "totalKm": worst["totalKm"]},
        "weekOverWeek": period_change(stats["totalKm"], previous_km, stats["totalActiveHours"], previous_hours),
        "recorded": await _recorded(db, scope, user["id"], start, end),
        "filters": {"userId": user["id"], "weekStart": stats["weekStart"]},
    }


async def monthly_report(db, caller: User, user_id: Optional[str] = None, month: Optional[int] = None,
                         year: Optional[int] = None) -> Dict[str, Any]:
    today = utcnow().date()
    month = today.month if month is None else month
    year = today.year if year is None else year
    if not 1 <= month <= 12:
        raise ValidationFailed("Month must be between 1 and 12")
    if not MIN_YEAR <= year <= today.year + 1:
        raise ValidationFailed("Invalid year specified")

    scope, user = await _resolve_target(db, caller, user_id)
    first, last = month_bounds(month, year)
    # Edge weeks reach into the neighbouring months
    range_start = week_start_of(first)
    range_end = week_start_of(last) + timedelta(days=6)

    sessions, speeds, _ = await _load_sessions(db, user["id"], range_start, range_end)
    stats = monthly_stats(sessions, speeds, month, year)

    previous_first, previous_last = month_bounds(12, year - 1) if month == 1 else month_bounds(month - 1, year)
    previous_km, previous_hours = await _previous_totals(db, user["id"], previous_first, previous_last)

    logger.info(f"Monthly GPS report {year}-{month:02d} for {user['id']} requested by {caller.id}")
    return {
        "month": month,
        "year": year,
        "user": user,
        "stats": stats,
        "monthOverMonth": period_change(stats["totalKm"], previous_km, stats["totalActiveHours"], previous_hours),
        "recorded": await _recorded(db, scope, user["id"], first, last),
        "filters": {"userId": user["id"], "month": month, "year": year},
    }
