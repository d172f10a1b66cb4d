"""
Check-in / check-out state transitions for tracking sessions.

A user holds at most one open session: checking in while a session is still
open closes the old one first. Every way of closing a session (check-out,
auto-close, force-close) goes through `close_session`, which recomputes the
final distance over the stored samples and rolls the result into the
user's daily summary.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import config
import daily_summary
from access_scope import AccessScope, load_scope
from distance_engine import SAMPLE_ORDER, DistanceEngine, load_session_points, next_sample_seq, recalculate_session
from errors import Conflict, Forbidden, NotFound, ValidationFailed
from ingestion import get_session_for_caller, sanitize_reading, session_locks, user_locks
from models import (STATUS_ACTIVE, STATUS_AUTO_CLOSED, STATUS_COMPLETED, STATUS_FORCE_CLOSED,
                    Location, LocationSample, TrackingSession, User, iso, parse_dt, to_document, utcnow)

logger = logging.getLogger(__name__)


def _coordinate(latitude, longitude, accuracy, now: datetime, required: bool) -> Optional[Dict[str, Any]]:
    if latitude is None and longitude is None and not required:
        return None
    coord = sanitize_reading({"latitude": latitude, "longitude": longitude, "accuracy": accuracy}, now)
    if coord is None:
        raise ValidationFailed("Valid latitude and longitude are required")
    coord["timestamp"] = now
    return coord


def _location(coord: Optional[Dict[str, Any]]) -> Optional[Location]:
    if coord is None:
        return None
    return Location(latitude=coord["latitude"], longitude=coord["longitude"], accuracy=coord.get("accuracy"))


async def close_session(db, distance_engine: DistanceEngine, session: Dict[str, Any], closed_at: datetime,
                        status: str, final_coord: Optional[Dict[str, Any]] = None,
                        closed_by: Optional[str] = None, reason: Optional[str] = None) -> Dict[str, Any]:
    """Close an open session. The caller must hold the session lock."""
    check_in = parse_dt(session["check_in"])
    check_out = max(closed_at, check_in)

    points = await load_session_points(db, session["id"])
    if final_coord is not None:
        points.append(final_coord)
    result = await distance_engine.compute_route(points)

    hours = (check_out - check_in).total_seconds() / 3600
    duration_minutes = result.duration_minutes
    if duration_minutes is None:
        duration_minutes = hours * 60
    needs_review = status == STATUS_AUTO_CLOSED and hours > config.STALE_SESSION_REVIEW_HOURS

    update = {
        "check_out": iso(check_out),
        "status": status,
        "total_distance_km": result.distance_km,
        "calculation_method": result.method,
        "route_accuracy": result.accuracy_tag,
        "route_data": result.route_metadata(closed_by=closed_by, close_reason=reason),
        "estimated_duration_minutes": duration_minutes,
        "close_reason": reason,
        "closed_by": closed_by,
        "needs_review": needs_review,
    }
    location = _location(final_coord)
    if location is not None:
        update["end_location"] = location.model_dump()

    # Guarded on the open status so a session can only be closed once
    outcome = await db.tracking_sessions.update_one(
        {"id": session["id"], "status": STATUS_ACTIVE},
        {"$set": update}
    )
    if outcome.matched_count == 0:
        raise Conflict("Session already checked out")

    if final_coord is not None:
        seq = await next_sample_seq(db, session["id"])
        sample = LocationSample(session_id=session["id"], user_id=session["user_id"], seq=seq, **final_coord)
        await db.location_samples.insert_one(to_document(sample))

    distance_delta = result.distance_km - (session.get("total_distance_km") or 0)
    await daily_summary.increment(
        db, session["user_id"], check_out,
        distance_km=distance_delta, hours=hours, visits=1, check_ins=1,
    )

    if needs_review:
        logger.warning(f"Session {session['id']} auto-closed after {hours:.1f}h, flagged for review")

    return {
        **session,
        **update,
        "duration_hours": hours,
        "sample_count": len(points),
        "result": result,
    }


async def check_in(db, distance_engine: DistanceEngine, caller: User, latitude, longitude,
                   accuracy=None, note: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    coord = _coordinate(latitude, longitude, accuracy, now, required=True)

    async with user_locks.hold(caller.id):
        open_sessions = await db.tracking_sessions.find(
            {"user_id": caller.id, "status": STATUS_ACTIVE}, {"_id": 0}, sort=[("check_in", -1)]
        ).to_list(None)

        auto_closed = []
        for stale in open_sessions:
            async with session_locks.hold(stale["id"]):
                # Re-read under the lock: a batch may have added distance meanwhile
                current = await db.tracking_sessions.find_one(
                    {"id": stale["id"], "status": STATUS_ACTIVE}, {"_id": 0}
                )
                if current is None:
                    continue
                try:
                    closed = await close_session(
                        db, distance_engine, current, now, STATUS_AUTO_CLOSED,
                        closed_by=caller.id, reason="auto_closed",
                    )
                except Conflict:
                    # Closed concurrently by a check-out
                    continue
            auto_closed.append(closed)
            logger.info(f"Auto-closed unclosed session {stale['id']} for user {caller.id}")

        session = TrackingSession(
            user_id=caller.id,
            user_name=caller.full_name,
            check_in=now,
            start_location=_location(coord),
            note=note,
        )
        await db.tracking_sessions.insert_one(to_document(session))
        first = LocationSample(session_id=session.id, user_id=caller.id, **coord)
        await db.location_samples.insert_one(to_document(first))

    response = {
        "sessionId": session.id,
        "checkIn": session.check_in,
        "status": STATUS_ACTIVE,
        "totalKm": 0.0,
        "startLocation": session.start_location.model_dump(),
        "message": "Check-in successful",
    }
    if auto_closed:
        response["autoClosedSessions"] = [
            {"sessionId": c["id"], "checkOut": c["check_out"], "totalKm": round(c["total_distance_km"], 3),
             "needsReview": c["needs_review"]}
            for c in auto_closed
        ]
        response["warnings"] = [f"Previous session {c['id']} was still open and has been closed" for c in auto_closed]
    return response


def _closed_response(closed: Dict[str, Any], message: str) -> Dict[str, Any]:
    hours = closed["duration_hours"]
    total_km = closed["total_distance_km"]
    result = closed["result"]
    response = {
        "sessionId": closed["id"],
        "checkIn": closed["check_in"],
        "checkOut": closed["check_out"],
        "totalKm": round(total_km, 3),
        "duration": round(hours, 2),  # hours
        "durationMinutes": round(hours * 60, 1),
        "avgSpeed": round(total_km / hours, 2) if hours > 0 else 0,  # km/h
        "coordinateCount": closed["sample_count"],
        "distanceCalculationMethod": result.method,
        "routeAccuracy": result.accuracy_tag,
        "status": closed["status"],
        "message": message,
    }
    if closed.get("start_location"):
        response["startLocation"] = closed["start_location"]
    if closed.get("end_location"):
        response["endLocation"] = closed["end_location"]
    if "fallback_reason" in result.stats:
        response["warnings"] = [f"Distance calculation note: {result.stats['fallback_reason']}"]
    return response


async def check_out(db, distance_engine: DistanceEngine, caller: User, session_id: Optional[str],
                    latitude=None, longitude=None, accuracy=None, note: Optional[str] = None,
                    now: Optional[datetime] = None) -> Dict[str, Any]:
    if not session_id:
        raise ValidationFailed("Session ID is required for check-out")
    now = now or utcnow()
    coord = _coordinate(latitude, longitude, accuracy, now, required=False)

    async with session_locks.hold(session_id):
        session = await get_session_for_caller(db, caller, session_id)
        if session.get("check_out") or session.get("status") != STATUS_ACTIVE:
            raise Conflict("Session already checked out", {
                "checkOut": session.get("check_out"),
                "totalKm": session.get("total_distance_km"),
            })
        if note:
            session["note"] = note
            await db.tracking_sessions.update_one({"id": session_id}, {"$set": {"note": note}})
        closed = await close_session(db, distance_engine, session, now, STATUS_COMPLETED,
                                     final_coord=coord, closed_by=caller.id, reason="check_out")

    return _closed_response(closed, "Check-out successful")


async def force_close(db, distance_engine: DistanceEngine, caller: User, session_id: Optional[str],
                      reason: Optional[str] = None, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Close someone's open session without a final location (owner, their lead, or an admin)."""
    if not session_id:
        raise ValidationFailed("Session ID is required")
    now = now or utcnow()

    async with session_locks.hold(session_id):
        session = await get_session_for_caller(db, caller, session_id, allow_supervisor=True)
        if session.get("status") != STATUS_ACTIVE:
            raise Conflict("Session already checked out")
        closed = await close_session(db, distance_engine, session, now, STATUS_FORCE_CLOSED,
                                     closed_by=caller.id, reason=reason or "Force closed")

    logger.info(f"Session {session_id} force-closed by {caller.id}. Reason: {reason or 'Not specified'}")
    response = _closed_response(closed, "Session force closed")
    response["reason"] = reason or "Force closed"
    response["closedBy"] = caller.id
    return response


async def get_status(db, caller: User, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    session = await db.tracking_sessions.find_one(
        {"user_id": caller.id, "status": STATUS_ACTIVE}, {"_id": 0}, sort=[("check_in", -1)]
    )
    if not session:
        return {"status": "inactive", "activeSession": None}

    check_in = parse_dt(session["check_in"])
    duration_hours = max((now - check_in).total_seconds(), 0) / 3600
    sample_count = await db.location_samples.count_documents({"session_id": session["id"]})
    return {
        "status": "active",
        "activeSession": {
            "sessionId": session["id"],
            "checkIn": session["check_in"],
            "duration": round(duration_hours, 2),
            "durationMinutes": round(duration_hours * 60, 1),
            "totalKm": round(session.get("total_distance_km") or 0, 3),
            "coordinateCount": sample_count,
            "startLocation": session.get("start_location"),
        },
    }


async def list_sessions(db, scope: AccessScope, user_id: Optional[str] = None, status: Optional[str] = None,
                        start_date: Optional[str] = None, end_date: Optional[str] = None,
                        limit: int = 100) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = dict(scope.narrow(user_id).mongo_filter("user_id"))
    if status:
        query["status"] = status

    # Dates are compared on the YYYY-MM-DD prefix of the stored ISO string
    if start_date or end_date:
        check_in_filter = {}
        if start_date:
            check_in_filter["$gte"] = start_date[:10]
        if end_date:
            check_in_filter["$lt"] = end_date[:10] + "T99"
        query["check_in"] = check_in_filter

    docs = await db.tracking_sessions.find(
        query, {"_id": 0, "route_data": 0}, sort=[("check_in", -1)], limit=limit
    ).to_list(limit)
    return [TrackingSession(**d).model_dump(exclude={"route_data"}) for d in docs]


async def get_session_detail(db, caller: User, session_id: str) -> Dict[str, Any]:
    session = await db.tracking_sessions.find_one({"id": session_id}, {"_id": 0})
    if not session:
        raise NotFound("GPS session not found")
    scope = await load_scope(db, caller)
    if not scope.allows(session["user_id"]):
        raise Forbidden("Not authorized to view this session")

    samples = await db.location_samples.find(
        {"session_id": session_id}, {"_id": 0}, sort=SAMPLE_ORDER
    ).to_list(None)

    route = None
    if session.get("route_data"):
        try:
            route = json.loads(session["route_data"])
        except ValueError:
            logger.warning(f"Session {session_id} has unreadable route metadata")

    detail = TrackingSession(**session).model_dump(exclude={"route_data"})
    detail["route"] = route
    detail["samples"] = [LocationSample(**s).model_dump() for s in samples]
    detail["sample_count"] = len(samples)
    return detail


async def recalculate_one(db, distance_engine: DistanceEngine, caller: User, session_id: str) -> Dict[str, Any]:
    session = await db.tracking_sessions.find_one({"id": session_id}, {"_id": 0})
    if not session:
        raise NotFound("GPS session not found")
    scope = await load_scope(db, caller)
    if not scope.supervises(session["user_id"]):
        raise Forbidden("Insufficient permissions to recalculate this session")
    if session.get("status") == STATUS_ACTIVE:
        raise Conflict("Only closed sessions can be recalculated")

    async with session_locks.hold(session_id):
        try:
            return await recalculate_session(db, distance_engine, session, recalculated_by=caller.id)
        except ValueError as e:
            raise ValidationFailed(str(e))
