"""
Read-only view over open sessions for supervisors.

Nothing here is persisted or locked; the overview is a snapshot of whatever
has been ingested so far.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

import config
from access_scope import AccessScope
from distance_engine import LATEST_SAMPLE_FIRST, SAMPLE_ORDER, haversine_total_km
from models import STATUS_ACTIVE, iso, parse_dt, utcnow

logger = logging.getLogger(__name__)

MOVING = "moving"
IDLE = "idle"
STALE = "stale"


@dataclass
class MovementAnalysis:
    status: str
    window_distance_km: float = 0.0
    average_speed_kmh: Optional[float] = None
    samples_in_window: int = 0
    last_seen_minutes: Optional[float] = None

    @property
    def is_moving(self) -> bool:
        return self.status == MOVING

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "isMoving": self.is_moving,
            "windowDistanceKm": round(self.window_distance_km, 3),
            "averageSpeedKmh": round(self.average_speed_kmh, 1) if self.average_speed_kmh is not None else None,
            "samplesInWindow": self.samples_in_window,
            "lastSeenMinutes": round(self.last_seen_minutes, 1) if self.last_seen_minutes is not None else None,
        }


def classify_movement(samples: Sequence[Dict[str, Any]], now: Optional[datetime] = None,
                      window_minutes: Optional[float] = None, freshness_minutes: Optional[float] = None,
                      speed_threshold_kmh: Optional[float] = None,
                      distance_threshold_km: Optional[float] = None) -> MovementAnalysis:
    """Classify a session as moving, idle or stale from its recent samples.

    The window trails `now`. Moving needs at least two samples in the window
    and either a positive average device speed above the speed threshold or
    more window distance than the distance threshold. Otherwise the session is
    idle while its latest sample is fresh, and stale after that.
    """
    now = now or utcnow()
    window_minutes = config.MOVEMENT_WINDOW_MINUTES if window_minutes is None else window_minutes
    freshness_minutes = config.FRESHNESS_MINUTES if freshness_minutes is None else freshness_minutes
    speed_threshold_kmh = config.MOVING_SPEED_KMH if speed_threshold_kmh is None else speed_threshold_kmh
    distance_threshold_km = config.MOVING_DISTANCE_KM if distance_threshold_km is None else distance_threshold_km

    ordered = sorted(
        ({**s, "timestamp": parse_dt(s["timestamp"])} for s in samples if s.get("timestamp") is not None),
        key=lambda s: s["timestamp"],
    )
    if not ordered:
        return MovementAnalysis(status=STALE)

    last_seen = max((now - ordered[-1]["timestamp"]).total_seconds() / 60, 0.0)
    window_start = now - timedelta(minutes=window_minutes)
    in_window = [s for s in ordered if s["timestamp"] >= window_start]

    analysis = MovementAnalysis(status=STALE, samples_in_window=len(in_window), last_seen_minutes=last_seen)
    if len(in_window) >= 2:
        analysis.window_distance_km = haversine_total_km(in_window)
        speeds = [s["speed"] for s in in_window if s.get("speed") is not None and s["speed"] > 0]
        if speeds:
            analysis.average_speed_kmh = sum(speeds) / len(speeds)
        if ((analysis.average_speed_kmh or 0) > speed_threshold_kmh
                or analysis.window_distance_km > distance_threshold_km):
            analysis.status = MOVING
            return analysis

    analysis.status = IDLE if last_seen <= freshness_minutes else STALE
    return analysis


def _point(sample: Dict[str, Any]) -> Dict[str, Any]:
    return {"lat": sample["latitude"], "lng": sample["longitude"], "timestamp": sample["timestamp"]}


async def _session_view(db, session: Dict[str, Any], now: datetime) -> Dict[str, Any]:
    recent = await db.location_samples.find(
        {"session_id": session["id"]},
        {"_id": 0, "latitude": 1, "longitude": 1, "timestamp": 1},
        sort=LATEST_SAMPLE_FIRST, limit=config.LIVE_TRAIL_SIZE,
    ).to_list(config.LIVE_TRAIL_SIZE)
    window = await db.location_samples.find(
        {"session_id": session["id"],
         "timestamp": {"$gte": iso(now - timedelta(minutes=config.MOVEMENT_WINDOW_MINUTES))}},
        {"_id": 0, "latitude": 1, "longitude": 1, "timestamp": 1, "speed": 1},
        sort=SAMPLE_ORDER,
    ).to_list(None)

    # An empty window still needs the latest sample for the freshness check
    movement = classify_movement(window or recent[:1], now)

    start = session.get("start_location")
    duration_minutes = max((now - parse_dt(session["check_in"])).total_seconds(), 0) / 60
    return {
        "sessionId": session["id"],
        "userId": session["user_id"],
        "userName": session.get("user_name") or "Unknown",
        "checkIn": session["check_in"],
        "start": {"lat": start["latitude"], "lng": start["longitude"]} if start else None,
        "last": _point(recent[0]) if recent else None,
        "trail": [_point(s) for s in reversed(recent)],
        "totalKm": round(session.get("total_distance_km") or 0, 3),
        "durationMinutes": round(duration_minutes),
        "movement": movement.to_dict(),
    }


async def get_live_overview(db, scope: AccessScope, now: Optional[datetime] = None,
                            user_id: Optional[str] = None, limit: int = 100) -> Dict[str, Any]:
    now = now or utcnow()
    query = {**scope.narrow(user_id).mongo_filter("user_id"), "status": STATUS_ACTIVE}
    sessions = await db.tracking_sessions.find(
        query, {"_id": 0, "route_data": 0}, sort=[("check_in", -1)], limit=limit
    ).to_list(limit)

    active: List[Dict[str, Any]] = []
    for session in sessions:
        active.append(await _session_view(db, session, now))

    team_locations = [
        {
            "userId": s["userId"],
            "userName": s["userName"],
            "latitude": s["last"]["lat"],
            "longitude": s["last"]["lng"],
            "timestamp": s["last"]["timestamp"],
            "status": s["movement"]["status"],
        }
        for s in active if s["last"] is not None
    ]

    by_status = {MOVING: 0, IDLE: 0, STALE: 0}
    for s in active:
        by_status[s["movement"]["status"]] += 1

    long_limit = config.LONG_SESSION_HOURS * 60
    long_running = [
        {"sessionId": s["sessionId"], "userId": s["userId"], "userName": s["userName"],
         "durationMinutes": s["durationMinutes"]}
        for s in active if s["durationMinutes"] > long_limit
    ]
    no_recent_update = [
        {"sessionId": s["sessionId"], "userId": s["userId"], "userName": s["userName"],
         "lastSeenMinutes": s["movement"]["lastSeenMinutes"]}
        for s in active
        if s["movement"]["lastSeenMinutes"] is None or s["movement"]["lastSeenMinutes"] > config.FRESHNESS_MINUTES
    ]
    if long_running or no_recent_update:
        logger.info(
            f"Live overview: {len(long_running)} long-running, {len(no_recent_update)} without recent updates"
        )

    return {
        "activeSessions": active,
        "teamLocations": team_locations,
        "summary": {
            "activeCount": len(active),
            "byStatus": by_status,
            "totalKm": round(sum(s["totalKm"] for s in active), 2),
            "longRunning": long_running,
            "noRecentUpdate": no_recent_update,
            "lastUpdate": iso(now),
        },
    }
