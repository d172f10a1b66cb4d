"""
Distance computation for tracking sessions.

Two strategies share one contract, `compute(points) -> RouteResult`:
- HaversineStrategy: great-circle sum over consecutive points, no I/O
- RoutingProviderStrategy: road-network distance from an OSRM compatible
  routing service, with point reduction and a response cache

DistanceEngine runs the configured strategy and falls back to haversine
whenever the provider fails, so callers never see a routing error.
"""
import asyncio
import hashlib
import json
import logging
import time
from dataclasses import dataclass, field
from math import atan2, cos, radians, sin, sqrt
from threading import Lock
from typing import Any, Dict, List, Optional, Sequence

import requests
from starlette.concurrency import run_in_threadpool

import config
from errors import UpstreamError
from models import STATUS_ACTIVE, iso, parse_dt, utcnow

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0

METHOD_HAVERSINE = "haversine"
METHOD_ROUTING = "routing_provider"
METHOD_FALLBACK = "haversine_fallback"

ACCURACY_STANDARD = "standard"
ACCURACY_HIGH = "high"

# Points closer than this to the previous kept point are duplicates (1 m)
DUPLICATE_DISTANCE_KM = 0.001

# Sessions at or below this distance count as "not calculated" for recalculation
MIN_CALCULATED_KM = 0.001


def haversine_km(a: Dict[str, Any], b: Dict[str, Any]) -> float:
    """Great-circle distance in kilometers between two {latitude, longitude} points."""
    lat1 = radians(a["latitude"])
    lat2 = radians(b["latitude"])
    delta_lat = radians(b["latitude"] - a["latitude"])
    delta_lon = radians(b["longitude"] - a["longitude"])

    h = sin(delta_lat / 2) ** 2 + cos(lat1) * cos(lat2) * sin(delta_lon / 2) ** 2
    c = 2 * atan2(sqrt(h), sqrt(1 - h))
    return EARTH_RADIUS_KM * c


def haversine_total_km(points: Sequence[Dict[str, Any]]) -> float:
    total = 0.0
    for i in range(1, len(points)):
        total += haversine_km(points[i - 1], points[i])
    return total


def elapsed_minutes(points: Sequence[Dict[str, Any]]) -> Optional[float]:
    if len(points) < 2:
        return None
    start = parse_dt(points[0].get("timestamp"))
    end = parse_dt(points[-1].get("timestamp"))
    if start is None or end is None:
        return None
    return max((end - start).total_seconds() / 60, 0.0)


def remove_duplicates(points: Sequence[Dict[str, Any]], min_distance_km: float = DUPLICATE_DISTANCE_KM):
    if len(points) <= 1:
        return list(points)
    kept = [points[0]]
    for point in points[1:]:
        if haversine_km(kept[-1], point) >= min_distance_km:
            kept.append(point)
    # Keep the real end of the trace
    if kept[-1] is not points[-1] and len(kept) > 1:
        kept[-1] = points[-1]
    return kept


def _perpendicular_distance(point, start, end) -> float:
    dx = end["longitude"] - start["longitude"]
    dy = end["latitude"] - start["latitude"]
    if dx == 0 and dy == 0:
        return sqrt((point["longitude"] - start["longitude"]) ** 2 + (point["latitude"] - start["latitude"]) ** 2)
    numerator = abs(dy * point["longitude"] - dx * point["latitude"]
                    + end["longitude"] * start["latitude"] - end["latitude"] * start["longitude"])
    return numerator / sqrt(dx * dx + dy * dy)


def simplify_route(points: Sequence[Dict[str, Any]], epsilon: float = 0.0001) -> List[Dict[str, Any]]:
    """Douglas-Peucker simplification, epsilon in degrees."""
    if len(points) <= 2:
        return list(points)

    keep = [False] * len(points)
    keep[0] = keep[-1] = True
    stack = [(0, len(points) - 1)]
    while stack:
        first, last = stack.pop()
        max_dist = 0.0
        index = first
        for i in range(first + 1, last):
            dist = _perpendicular_distance(points[i], points[first], points[last])
            if dist > max_dist:
                max_dist = dist
                index = i
        if max_dist > epsilon:
            keep[index] = True
            stack.append((first, index))
            stack.append((index, last))
    return [p for p, k in zip(points, keep) if k]


def downsample(points: Sequence[Dict[str, Any]], max_points: int) -> List[Dict[str, Any]]:
    """Evenly pick at most `max_points`, always keeping both ends."""
    if len(points) <= max_points or max_points < 2:
        return list(points)
    step = (len(points) - 1) / (max_points - 1)
    return [points[round(i * step)] for i in range(max_points)]


def encode_polyline(points: Sequence[Dict[str, Any]]) -> str:
    return "|".join(f"{p['latitude']:.6f},{p['longitude']:.6f}" for p in points)


@dataclass
class RouteResult:
    distance_km: float
    duration_minutes: Optional[float]
    method: str
    accuracy_tag: str
    stats: Dict[str, Any] = field(default_factory=dict)
    polyline: str = ""

    def route_metadata(self, **extra) -> str:
        """Opaque JSON blob stored on the session."""
        payload = {
            "method": self.method,
            "accuracy": self.accuracy_tag,
            "distance_km": self.distance_km,
            "duration_minutes": self.duration_minutes,
            "polyline": self.polyline,
            "stats": self.stats,
            "calculated_at": iso(utcnow()),
        }
        payload.update(extra)
        return json.dumps(payload)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "distanceKm": round(self.distance_km, 3),
            "durationMinutes": round(self.duration_minutes, 1) if self.duration_minutes is not None else None,
            "method": self.method,
            "accuracy": self.accuracy_tag,
            "stats": self.stats,
        }


class RouteCache:
    """In-process TTL cache for routing provider responses."""

    def __init__(self, ttl_seconds: int = config.ROUTE_CACHE_TTL_SECONDS):
        self.ttl_seconds = ttl_seconds
        self._cache: Dict[str, Dict[str, Any]] = {}
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def key_for(points: Sequence[Dict[str, Any]]) -> str:
        raw = "|".join(f"{p['latitude']:.6f},{p['longitude']:.6f}" for p in points)
        return hashlib.sha1(raw.encode()).hexdigest()

    def get(self, key: str):
        with self._lock:
            entry = self._cache.get(key)
            if entry is not None:
                if time.time() - entry["timestamp"] < self.ttl_seconds:
                    self.hits += 1
                    return entry["data"]
                del self._cache[key]
            self.misses += 1
        return None

    def set(self, key: str, data) -> None:
        with self._lock:
            self._cache[key] = {"data": data, "timestamp": time.time()}

    def cleanup(self) -> None:
        now = time.time()
        with self._lock:
            expired = [k for k, v in self._cache.items() if now - v["timestamp"] >= self.ttl_seconds]
            for k in expired:
                del self._cache[k]

    def __len__(self):
        return len(self._cache)


class HaversineStrategy:
    name = METHOD_HAVERSINE

    async def compute(self, points: Sequence[Dict[str, Any]]) -> RouteResult:
        started = time.perf_counter()
        distance = haversine_total_km(points)
        return RouteResult(
            distance_km=distance,
            duration_minutes=elapsed_minutes(points),
            method=self.name,
            accuracy_tag=ACCURACY_STANDARD,
            stats={
                "original_points": len(points),
                "processed_points": len(points),
                "cache_hit": False,
                "calculation_ms": round((time.perf_counter() - started) * 1000, 2),
            },
            polyline=encode_polyline(points),
        )


class RoutingProviderStrategy:
    """Road-network distance from an OSRM style `/route` endpoint."""
    name = METHOD_ROUTING

    def __init__(self, base_url: str = config.ROUTING_BASE_URL,
                 timeout: float = config.ROUTING_TIMEOUT_SECONDS,
                 max_points: int = config.ROUTING_MAX_POINTS,
                 cache: Optional[RouteCache] = None,
                 http=None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_points = max_points
        self.cache = cache if cache is not None else RouteCache()
        self.http = http or requests

    def prepare_points(self, points: Sequence[Dict[str, Any]]) -> List[Dict[str, Any]]:
        prepared = remove_duplicates(points)
        if len(prepared) > self.max_points:
            prepared = simplify_route(prepared, 0.00005)  # ~5 m
        if len(prepared) > self.max_points:
            prepared = downsample(prepared, self.max_points)
        return prepared

    def _request_route(self, points: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
        coords = ";".join(f"{p['longitude']},{p['latitude']}" for p in points)
        try:
            response = self.http.get(
                f"{self.base_url}/{coords}",
                params={"overview": "false", "steps": "false"},
                headers={"User-Agent": "field-tracking/1.0"},
                timeout=self.timeout,
            )
            if response.status_code == 429:
                raise UpstreamError("Routing provider quota exceeded")
            response.raise_for_status()
            data = response.json()
            if not isinstance(data, dict):
                raise UpstreamError("Routing provider returned a malformed response")
            if data.get("code") != "Ok" or not data.get("routes"):
                raise UpstreamError(f"Routing provider error: {data.get('code') or 'no routes'}")
            route = data["routes"][0]
            return {
                "distance_km": float(route["distance"]) / 1000,
                "duration_minutes": float(route["duration"]) / 60,
            }
        except UpstreamError:
            raise
        except requests.Timeout as e:
            raise UpstreamError(f"Routing provider timed out: {e}")
        except (requests.RequestException, ValueError, KeyError, IndexError, TypeError) as e:
            raise UpstreamError(f"Routing provider request failed: {e}")

    async def compute(self, points: Sequence[Dict[str, Any]]) -> RouteResult:
        started = time.perf_counter()
        prepared = self.prepare_points(points)
        stats = {
            "original_points": len(points),
            "processed_points": len(prepared),
            "cache_hit": False,
        }
        if len(prepared) < 2:
            stats["calculation_ms"] = round((time.perf_counter() - started) * 1000, 2)
            return RouteResult(0.0, 0.0, self.name, ACCURACY_HIGH, stats, encode_polyline(prepared))

        key = RouteCache.key_for(prepared)
        route = self.cache.get(key)
        if route is None:
            route = await run_in_threadpool(self._request_route, prepared)
            self.cache.set(key, route)
        else:
            stats["cache_hit"] = True

        stats["calculation_ms"] = round((time.perf_counter() - started) * 1000, 2)
        return RouteResult(
            distance_km=route["distance_km"],
            duration_minutes=route["duration_minutes"],
            method=self.name,
            accuracy_tag=ACCURACY_HIGH,
            stats=stats,
            polyline=encode_polyline(prepared),
        )


class DistanceEngine:
    def __init__(self, primary=None, fallback=None):
        self.fallback = fallback or HaversineStrategy()
        self.primary = primary or self.fallback

    @property
    def method(self) -> str:
        return self.primary.name

    async def compute_route(self, points: Sequence[Dict[str, Any]]) -> RouteResult:
        points = [p for p in points if p is not None]
        if len(points) < 2:
            return RouteResult(
                distance_km=0.0,
                duration_minutes=None,
                method=self.primary.name,
                accuracy_tag=ACCURACY_STANDARD,
                stats={"original_points": len(points), "processed_points": len(points), "cache_hit": False},
                polyline=encode_polyline(points),
            )

        if self.primary is self.fallback:
            return await self.fallback.compute(points)

        try:
            return await self.primary.compute(points)
        except UpstreamError as e:
            logger.warning(f"{self.primary.name} failed, using haversine fallback: {e.message}")
            result = await self.fallback.compute(points)
            result.method = METHOD_FALLBACK
            result.stats["fallback_reason"] = e.message
            return result


def build_engine(method: str = config.DISTANCE_METHOD) -> DistanceEngine:
    if method == "routing":
        return DistanceEngine(primary=RoutingProviderStrategy())
    return DistanceEngine()


engine = build_engine()


def get_distance_engine() -> DistanceEngine:
    """FastAPI dependency returning the configured engine."""
    return engine


# Samples sharing a timestamp keep their storage order through `seq`
SAMPLE_ORDER = [("timestamp", 1), ("seq", 1)]
LATEST_SAMPLE_FIRST = [("timestamp", -1), ("seq", -1)]


async def load_session_points(db, session_id: str) -> List[Dict[str, Any]]:
    """All stored samples of a session, oldest first."""
    return await db.location_samples.find(
        {"session_id": session_id},
        {"_id": 0, "latitude": 1, "longitude": 1, "timestamp": 1, "speed": 1, "accuracy": 1},
        sort=SAMPLE_ORDER,
    ).to_list(None)


async def next_sample_seq(db, session_id: str) -> int:
    """Sequence number for the next stored sample. The caller must hold the session lock."""
    return await db.location_samples.count_documents({"session_id": session_id})


# Set on shutdown; batch recalculation stops before its next item.
recalculation_stop = asyncio.Event()


async def recalculate_session(db, distance_engine: DistanceEngine, session: Dict[str, Any],
                              recalculated_by: Optional[str] = None) -> Dict[str, Any]:
    points = await load_session_points(db, session["id"])
    if len(points) < 2:
        raise ValueError(f"Insufficient GPS data ({len(points)} points)")

    result = await distance_engine.compute_route(points)
    await db.tracking_sessions.update_one(
        {"id": session["id"]},
        {"$set": {
            "total_distance_km": result.distance_km,
            "estimated_duration_minutes": result.duration_minutes,
            "calculation_method": result.method,
            "route_accuracy": result.accuracy_tag,
            "route_data": result.route_metadata(recalculated_by=recalculated_by, recalculation=True),
        }}
    )
    return {
        "sessionId": session["id"],
        "userName": session.get("user_name"),
        "originalDistance": session.get("total_distance_km"),
        "newDistance": round(result.distance_km, 3),
        "duration": result.duration_minutes,
        "method": result.method,
        "accuracy": result.accuracy_tag,
        "gpsPoints": len(points),
        "optimizedPoints": result.stats.get("processed_points"),
    }


async def recalculate_closed_sessions(db, distance_engine: DistanceEngine, force: bool = False,
                                      limit: int = 50, delay_seconds: float = config.RECALC_DELAY_SECONDS,
                                      stop_event: Optional[asyncio.Event] = None,
                                      recalculated_by: Optional[str] = None) -> Dict[str, Any]:
    """Recompute distance for closed sessions, one at a time.

    With force=False only sessions without a usable distance are touched, so
    re-running the job is safe. Open sessions are never included.
    """
    stop_event = stop_event or recalculation_stop
    query: Dict[str, Any] = {"status": {"$ne": STATUS_ACTIVE}, "check_out": {"$ne": None}}
    if not force:
        query["$or"] = [
            {"total_distance_km": None},
            {"total_distance_km": {"$exists": False}},
            {"total_distance_km": {"$lte": MIN_CALCULATED_KM}},
        ]

    sessions = await db.tracking_sessions.find(
        query, {"_id": 0}, sort=[("check_in", -1)], limit=limit
    ).to_list(limit)
    logger.info(f"Batch recalculation: {len(sessions)} sessions to process (force={force})")

    results = {"processed": 0, "successful": 0, "failed": 0, "errors": [], "details": [], "stopped": False}
    for index, session in enumerate(sessions):
        if stop_event.is_set():
            logger.info("Batch recalculation stopped before completion")
            results["stopped"] = True
            break

        results["processed"] += 1
        try:
            detail = await recalculate_session(db, distance_engine, session, recalculated_by)
            results["successful"] += 1
            results["details"].append(detail)
        except ValueError as e:
            results["failed"] += 1
            results["errors"].append(f"Session {session['id']}: {e}")
            continue

        if delay_seconds and index < len(sessions) - 1:
            await asyncio.sleep(delay_seconds)

    logger.info(
        f"Batch recalculation done: processed={results['processed']} "
        f"successful={results['successful']} failed={results['failed']}"
    )
    return results
