"""
Coordinate ingestion: sanitize, filter, persist and add distance.

Batches for one session are processed one at a time (see `session_locks`):
the distance delta is computed from the session's last stored sample, so two
interleaved batches would otherwise both start from the same point and
count the same stretch twice.
"""
import asyncio
import logging
import math
from collections import defaultdict
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

import config
import daily_summary
from access_scope import load_scope
from distance_engine import LATEST_SAMPLE_FIRST, METHOD_FALLBACK, DistanceEngine, next_sample_seq
from errors import Conflict, Forbidden, NotFound, PayloadTooLarge, ValidationFailed
from models import STATUS_ACTIVE, LocationSample, User, iso, parse_dt, to_document, utcnow

logger = logging.getLogger(__name__)

HIGH_SKIP_RATE = 0.5


class KeyedLocks:
    """One asyncio.Lock per key, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def hold(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                self._locks.pop(key, None)

    def __len__(self):
        return len(self._locks)


# Serializes ingestion, check-out and force-close per session id
session_locks = KeyedLocks()
# Serializes check-in per user id
user_locks = KeyedLocks()


def _number(value) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _first_present(raw: Dict[str, Any], *keys):
    for key in keys:
        if key in raw and raw[key] is not None:
            return raw[key]
    return None


def _parse_timestamp(value, default: datetime) -> datetime:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, (int, float)):
        # Epoch milliseconds, as sent by the mobile client
        try:
            return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return default
    try:
        return parse_dt(value) or default
    except (TypeError, ValueError):
        return default


def sanitize_reading(raw, received_at: Optional[datetime] = None) -> Optional[Dict[str, Any]]:
    """Coerce one raw reading; None when it is not a usable location."""
    if not isinstance(raw, dict):
        return None

    latitude = _number(_first_present(raw, "latitude", "lat"))
    longitude = _number(_first_present(raw, "longitude", "lng", "lon"))
    if latitude is None or longitude is None:
        return None
    if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
        return None

    reading = {
        "latitude": latitude,
        "longitude": longitude,
        "timestamp": _parse_timestamp(raw.get("timestamp"), received_at or utcnow()),
    }
    for key in ("accuracy", "speed", "altitude"):
        value = _number(raw.get(key))
        if value is not None:
            reading[key] = value
    return reading


def filter_by_accuracy(readings: List[Dict[str, Any]], threshold: Optional[float] = None,
                       keep_best: Optional[int] = None) -> Tuple[List[Dict[str, Any]], int, bool]:
    """Drop readings less accurate than `threshold`.

    Readings without an accuracy value are kept. If the filter would drop
    everything, the `keep_best` most accurate readings are kept instead.
    Returns (kept, dropped_count, fallback_used).
    """
    if threshold is None:
        threshold = config.GPS_ACCURACY_THRESHOLD
    if keep_best is None:
        keep_best = config.ACCURACY_FALLBACK_KEEP

    kept = [r for r in readings if r.get("accuracy") is None or r["accuracy"] <= threshold]
    if kept or not readings:
        return kept, len(readings) - len(kept), False

    best = sorted(readings, key=lambda r: r["accuracy"])[:max(keep_best, 1)]
    return best, len(readings) - len(best), True


async def get_session_for_caller(db, caller: User, session_id: str, allow_supervisor: bool = False) -> Dict[str, Any]:
    session = await db.tracking_sessions.find_one({"id": session_id}, {"_id": 0})
    if not session:
        raise NotFound("GPS session not found")

    if session["user_id"] != caller.id:
        if not allow_supervisor:
            raise Forbidden("Unauthorized - not your session")
        scope = await load_scope(db, caller)
        if not scope.allows(session["user_id"]):
            raise Forbidden("Unauthorized - not your session")
    return session


async def last_sample(db, session_id: str) -> Optional[Dict[str, Any]]:
    return await db.location_samples.find_one(
        {"session_id": session_id}, {"_id": 0}, sort=LATEST_SAMPLE_FIRST
    )


async def ingest_batch(db, distance_engine: DistanceEngine, caller: User, session_id: Optional[str],
                       raw_batch, sync_token: Optional[str] = None,
                       now: Optional[datetime] = None) -> Dict[str, Any]:
    if not session_id or not isinstance(raw_batch, list):
        raise ValidationFailed("Session ID and coordinates array are required")
    # Checked before touching the database
    if len(raw_batch) > config.MAX_BATCH_SIZE:
        raise PayloadTooLarge(
            f"Batch size too large. Maximum {config.MAX_BATCH_SIZE} coordinates per request.",
            {"maxBatchSize": config.MAX_BATCH_SIZE, "received": len(raw_batch)},
        )
    if not raw_batch:
        raise ValidationFailed("Empty coordinates array")

    now = now or utcnow()
    async with session_locks.hold(session_id):
        session = await get_session_for_caller(db, caller, session_id, allow_supervisor=True)
        if session.get("check_out") or session.get("status") != STATUS_ACTIVE:
            raise Conflict("Cannot add coordinates to closed session")

        sanitized = [r for r in (sanitize_reading(raw, now) for raw in raw_batch) if r is not None]
        invalid_count = len(raw_batch) - len(sanitized)
        if not sanitized:
            raise ValidationFailed("No valid coordinates provided", {"filtered": invalid_count})

        kept, accuracy_filtered, fallback_used = filter_by_accuracy(sanitized)
        kept.sort(key=lambda r: r["timestamp"])

        previous = await last_sample(db, session_id)

        seq = await next_sample_seq(db, session_id)
        samples = [
            LocationSample(session_id=session_id, user_id=session["user_id"], seq=seq + i, **r)
            for i, r in enumerate(kept)
        ]
        await db.location_samples.insert_many([to_document(s) for s in samples])

        points = ([previous] if previous else []) + kept
        result = await distance_engine.compute_route(points)
        distance_added = result.distance_km

        if distance_added > 0:
            await db.tracking_sessions.update_one(
                {"id": session_id},
                {"$inc": {"total_distance_km": distance_added}}
            )
            await daily_summary.increment(db, session["user_id"], now, distance_km=distance_added)

    warnings = []
    if fallback_used:
        warnings.append(
            f"All readings exceeded the accuracy threshold ({config.GPS_ACCURACY_THRESHOLD}m); "
            f"kept the {len(kept)} most accurate"
        )
    if (invalid_count + accuracy_filtered) / len(raw_batch) > HIGH_SKIP_RATE:
        warnings.append("High skip rate - check GPS accuracy settings")
    if result.method == METHOD_FALLBACK:
        warnings.append("Routing provider unavailable, distance estimated with haversine")

    logger.info(
        f"Session {session_id}: stored {len(kept)}/{len(raw_batch)} samples, "
        f"+{distance_added:.3f}km ({result.method})"
    )
    response = {
        "success": True,
        "sessionId": session_id,
        "processed": len(kept),
        "filtered": invalid_count,
        "accuracyFiltered": accuracy_filtered,
        "distanceAdded": round(distance_added, 3),
        "totalDistanceKm": round((session.get("total_distance_km") or 0) + distance_added, 3),
        "method": result.method,
        "warnings": warnings,
    }
    if sync_token is not None:
        response["syncStatus"] = {"syncToken": sync_token, "timestamp": iso(utcnow())}
    return response


async def batch_upload_status(db, caller: User, session_id: Optional[str]) -> Dict[str, Any]:
    if not session_id:
        raise ValidationFailed("Session ID is required")
    session = await get_session_for_caller(db, caller, session_id, allow_supervisor=True)

    total = await db.location_samples.count_documents({"session_id": session_id})
    recent = await db.location_samples.find(
        {"session_id": session_id}, {"_id": 0, "timestamp": 1}, sort=LATEST_SAMPLE_FIRST, limit=10
    ).to_list(10)

    five_minutes_ago = utcnow() - timedelta(minutes=5)
    recent_uploads = [r for r in recent if parse_dt(r["timestamp"]) > five_minutes_ago]

    return {
        "sessionId": session_id,
        "status": "active" if session.get("status") == STATUS_ACTIVE else "completed",
        "totalCoordinates": total,
        "recentActivity": {
            "lastUpload": recent[0]["timestamp"] if recent else None,
            "uploadsInLastFiveMinutes": len(recent_uploads),
            "averageUploadRate": len(recent_uploads) / 5,  # per minute
        },
        "recommendations": {
            "maxBatchSize": config.MAX_BATCH_SIZE,
            "minAccuracy": config.GPS_ACCURACY_THRESHOLD,
        },
    }
