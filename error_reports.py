"""
Device-reported GPS errors: record, list, resolve.

New reports are forwarded to the addresses in ALERT_EMAILS. Delivery is best
effort and never fails the report itself.
"""
import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from starlette.concurrency import run_in_threadpool

import config
import email_service
from access_scope import personal_scope
from errors import Forbidden, ValidationFailed
from models import ErrorReport, ErrorReportCreate, User, iso, to_document, utcnow

logger = logging.getLogger(__name__)

MAX_MESSAGE_LENGTH = 1000
MAX_ERROR_DATA_BYTES = 10 * 1024
MAX_LIST_LIMIT = 200

TROUBLESHOOTING_GUIDE = {
    "GPS_PERMISSION_DENIED": [
        "Check app permissions in device settings",
        "Ensure location services are enabled",
        "Restart the app and grant permissions",
    ],
    "GPS_TIMEOUT": [
        "Move to an area with better GPS signal",
        "Check if device GPS is enabled",
        "Try restarting location services",
    ],
    "GPS_ACCURACY_LOW": [
        "Move away from buildings or covered areas",
        "Wait for GPS signal to improve",
        "Check GPS settings for high accuracy mode",
    ],
    "NETWORK_ERROR": [
        "Check internet connection",
        "Try switching between WiFi and mobile data",
        "Retry the operation after network is stable",
    ],
    "SESSION_NOT_FOUND": [
        "Start a new GPS session",
        "Check if previous session was properly closed",
        "Contact support if problem persists",
    ],
}

_TIPS = {
    "GPS_PERMISSION_DENIED": [
        "Enable location permissions for this app in your device settings",
        "Make sure location services are turned on",
    ],
    "GPS_TIMEOUT": [
        "Move to an area with clear view of the sky",
        "Wait a few moments for GPS to acquire signal",
        "Ensure GPS is enabled in device settings",
    ],
    "GPS_ACCURACY_LOW": [
        "Move away from tall buildings or covered areas",
        "Enable high-accuracy GPS mode in device settings",
        "Wait for GPS accuracy to improve",
    ],
    "NETWORK_ERROR": [
        "Check your internet connection",
        "Try switching between WiFi and mobile data",
        "Retry after network connection is stable",
    ],
    "SESSION_NOT_FOUND": [
        "Start a new GPS tracking session",
        "Check if previous session was properly closed",
    ],
    "COORDINATE_VALIDATION_FAILED": [
        "GPS coordinates appear to be invalid",
        "Wait for GPS signal to improve",
        "Try restarting location services",
    ],
    "DATABASE_ERROR": [
        "Temporary server issue - please retry",
        "Check internet connection",
        "Contact support if problem persists",
    ],
}

_DEFAULT_TIPS = [
    "Try restarting the GPS tracking session",
    "Check device location settings",
    "Contact support with error details",
]

NEXT_STEPS = [
    "Error has been logged for investigation",
    "Continue using GPS tracking if possible",
    "Contact support if problem persists",
]


def troubleshooting_tips(error_type: str, error_message: str) -> List[str]:
    tips = list(_TIPS.get(error_type, _DEFAULT_TIPS))
    message = error_message.lower()
    if "accuracy" in message:
        tips.append("GPS accuracy is below threshold - move to open area")
    if "timeout" in message:
        tips.append("GPS signal acquisition timed out - try again in a few moments")
    return tips


def validate_report(payload: ErrorReportCreate):
    """Returns (errors, warnings)."""
    errors, warnings = [], []
    if not isinstance(payload.error_type, str) or not payload.error_type.strip():
        errors.append("Error type is required and must be a string")
    if not isinstance(payload.error_message, str) or not payload.error_message.strip():
        errors.append("Error message is required and must be a string")
    elif len(payload.error_message) > MAX_MESSAGE_LENGTH:
        warnings.append(f"Error message is longer than {MAX_MESSAGE_LENGTH} characters")

    if payload.error_data is not None:
        try:
            size = len(json.dumps(payload.error_data, default=str))
        except (TypeError, ValueError):
            errors.append("Error data must be JSON serializable")
        else:
            if size > MAX_ERROR_DATA_BYTES:
                warnings.append("Error data is larger than 10KB")
    return errors, warnings


async def notify(report: Dict[str, Any]) -> int:
    """Send the alert email to every configured address. Returns how many were sent."""
    sent = 0
    for address in config.ALERT_EMAILS:
        try:
            if await run_in_threadpool(email_service.send_error_report_alert, address, report):
                sent += 1
        except Exception:
            logger.exception(f"Failed to send GPS error alert to {address}")
    return sent


async def create_report(db, caller: User, payload: ErrorReportCreate) -> Dict[str, Any]:
    errors, warnings = validate_report(payload)
    if errors:
        raise ValidationFailed("Validation failed", {"details": errors})

    error_data = payload.error_data
    if error_data is not None and not isinstance(error_data, dict):
        error_data = {"value": error_data}

    report = ErrorReport(
        user_id=caller.id,
        session_id=payload.session_id,
        error_type=payload.error_type,
        error_message=payload.error_message,
        error_data=error_data,
        device_info=payload.device_info,
        timestamp=payload.timestamp or utcnow(),
    )
    document = to_document(report)
    await db.error_reports.insert_one(dict(document))
    logger.warning(f"GPS error reported by {caller.id}: {report.error_type} (session {report.session_id or 'N/A'})")

    await notify(document)

    response = {
        "success": True,
        "errorId": report.id,
        "message": "GPS error logged successfully",
        "troubleshooting": troubleshooting_tips(report.error_type, report.error_message),
        "timestamp": document["timestamp"],
        "nextSteps": NEXT_STEPS,
    }
    if warnings:
        response["warnings"] = warnings
    return response


async def list_reports(db, caller: User, session_id: Optional[str] = None, error_type: Optional[str] = None,
                       resolved: Optional[bool] = None, limit: int = 50) -> Dict[str, Any]:
    # Only admins see everyone's reports
    query: Dict[str, Any] = dict(personal_scope(caller).mongo_filter("user_id"))
    if session_id:
        query["session_id"] = session_id
    if error_type:
        query["error_type"] = error_type
    if resolved is not None:
        query["resolved"] = resolved

    limit = max(1, min(limit, MAX_LIST_LIMIT))
    docs = await db.error_reports.find(
        query, {"_id": 0}, sort=[("created_at", -1)], limit=limit
    ).to_list(limit)
    reports = [ErrorReport(**d).model_dump() for d in docs]

    by_type: Dict[str, int] = {}
    for r in reports:
        by_type[r["error_type"]] = by_type.get(r["error_type"], 0) + 1
    resolved_count = sum(1 for r in reports if r["resolved"])

    return {
        "errors": reports,
        "stats": {
            "total": len(reports),
            "resolved": resolved_count,
            "unresolved": len(reports) - resolved_count,
            "byType": by_type,
        },
        "troubleshootingGuide": TROUBLESHOOTING_GUIDE,
        "metadata": {
            "totalCount": len(reports),
            "filters": {"sessionId": session_id, "errorType": error_type, "resolved": resolved},
            "generatedAt": iso(utcnow()),
        },
    }


async def resolve_reports(db, caller: User, error_ids: Optional[List[str]], resolution: Optional[str] = None,
                          now: Optional[datetime] = None) -> Dict[str, Any]:
    if not personal_scope(caller).unrestricted:
        raise Forbidden("Only administrators can resolve GPS errors")
    if not isinstance(error_ids, list) or not error_ids:
        raise ValidationFailed("Error IDs array is required")

    now = now or utcnow()
    resolution = resolution or "Marked as resolved"
    result = await db.error_reports.update_many(
        {"id": {"$in": error_ids}},
        {"$set": {"resolved": True, "resolution": resolution, "resolved_by": caller.id, "resolved_at": iso(now)}}
    )
    logger.info(f"GPS errors resolved by admin {caller.id}: {result.modified_count} of {len(error_ids)}")
    return {
        "success": True,
        "resolvedCount": result.modified_count,
        "resolution": resolution,
        "resolvedBy": caller.id,
        "resolvedAt": iso(now),
    }
