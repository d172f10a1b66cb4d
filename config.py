"""
Central configuration.
Values come from the environment (optionally a .env file next to this module).
"""
import os
from pathlib import Path

from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')


def _float_env(name: str, default: float) -> float:
    value = os.environ.get(name)
    if value in (None, ''):
        return default
    return float(value)


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value in (None, ''):
        return default
    return int(value)


# MongoDB
MONGO_URL = os.environ.get('MONGO_URL', 'mongodb://localhost:27017')
DB_NAME = os.environ.get('DB_NAME', 'field_tracking')

# Security
SECRET_KEY = os.environ.get('JWT_SECRET_KEY', 'your-secret-key-change-this-in-production')
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = _int_env('ACCESS_TOKEN_EXPIRE_MINUTES', 60 * 24 * 7)  # 7 days

CORS_ORIGINS = os.environ.get('CORS_ORIGINS', '*').split(',')

# Ingestion
MAX_BATCH_SIZE = _int_env('MAX_BATCH_SIZE', 5000)
GPS_ACCURACY_THRESHOLD = _float_env('GPS_ACCURACY_THRESHOLD', 50.0)  # meters
ACCURACY_FALLBACK_KEEP = _int_env('ACCURACY_FALLBACK_KEEP', 5)

# Distance engine
DISTANCE_METHOD = os.environ.get('DISTANCE_METHOD', 'haversine')  # haversine | routing
ROUTING_BASE_URL = os.environ.get('ROUTING_BASE_URL', 'https://router.project-osrm.org/route/v1/driving')
ROUTING_TIMEOUT_SECONDS = _float_env('ROUTING_TIMEOUT_SECONDS', 8.0)
ROUTING_MAX_POINTS = _int_env('ROUTING_MAX_POINTS', 100)
ROUTE_CACHE_TTL_SECONDS = _int_env('ROUTE_CACHE_TTL_SECONDS', 24 * 60 * 60)
RECALC_DELAY_SECONDS = _float_env('RECALC_DELAY_SECONDS', 0.1)

# Live monitoring
MOVEMENT_WINDOW_MINUTES = _float_env('MOVEMENT_WINDOW_MINUTES', 5.0)
FRESHNESS_MINUTES = _float_env('FRESHNESS_MINUTES', 10.0)
MOVING_SPEED_KMH = _float_env('MOVING_SPEED_KMH', 1.0)
MOVING_DISTANCE_KM = _float_env('MOVING_DISTANCE_KM', 0.05)
LIVE_TRAIL_SIZE = _int_env('LIVE_TRAIL_SIZE', 20)
LONG_SESSION_HOURS = _float_env('LONG_SESSION_HOURS', 10.0)

# Sessions older than this when auto-closed on a new check-in get flagged
STALE_SESSION_REVIEW_HOURS = _float_env('STALE_SESSION_REVIEW_HOURS', 12.0)

# Error report alerts
ALERT_EMAILS = [e.strip() for e in os.environ.get('ALERT_EMAILS', '').split(',') if e.strip()]
