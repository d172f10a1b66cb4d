"""
MongoDB connection (motor).
The client connects lazily, so importing this module never blocks.
"""
import logging

from motor.motor_asyncio import AsyncIOMotorClient

import config

logger = logging.getLogger(__name__)

client = AsyncIOMotorClient(config.MONGO_URL)
db = client[config.DB_NAME]


def get_db():
    """FastAPI dependency returning the application database."""
    return db


async def ensure_indexes(database) -> None:
    await database.tracking_sessions.create_index([("user_id", 1), ("check_in", -1)])
    await database.tracking_sessions.create_index([("status", 1)])
    await database.tracking_sessions.create_index([("id", 1)], unique=True)
    await database.location_samples.create_index([("session_id", 1), ("timestamp", -1), ("seq", -1)])
    await database.daily_summaries.create_index([("user_id", 1), ("date", 1)], unique=True)
    await database.error_reports.create_index([("user_id", 1), ("created_at", -1)])
    await database.users.create_index([("id", 1)], unique=True)
    await database.users.create_index([("reports_to", 1)])
