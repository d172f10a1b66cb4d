from fastapi import FastAPI, APIRouter, Depends, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.middleware.cors import CORSMiddleware
import logging
from typing import Optional

import config
import daily_summary
import error_reports
import gps_analytics
import ingestion
import live_monitoring
import session_lifecycle
from access_scope import load_scope
from auth import get_admin_user, get_current_user
from database import client, ensure_indexes, get_db
from distance_engine import DistanceEngine, get_distance_engine, recalculate_closed_sessions, recalculation_stop
from errors import InternalError, TrackingError
from models import (CheckInRequest, CheckOutRequest, CoordinateBatchRequest, ErrorReportCreate,
                    ErrorResolveRequest, ForceCloseRequest, RecalculateRequest, User, iso, utcnow)

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# Create the main app
app = FastAPI(title="Field Tracking Service")
api_router = APIRouter(prefix="/api")


@app.on_event("startup")
async def startup_event():
    """Create database indexes"""
    try:
        await ensure_indexes(get_db())
        logger.info("Database indexes created successfully")
    except Exception as e:
        logger.warning(f"Index creation warning: {e}")


@app.exception_handler(TrackingError)
async def tracking_error_handler(request: Request, exc: TrackingError):
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={"detail": "Invalid request body", "code": "VALIDATION_ERROR", "errors": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} failed")
    error = InternalError("Internal server error")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@api_router.get("/health")
async def health():
    return {"status": "ok", "timestamp": iso(utcnow()), "distanceMethod": get_distance_engine().method}


# Session lifecycle
@api_router.post("/tracking/checkin", status_code=status.HTTP_201_CREATED)
async def check_in(payload: CheckInRequest, current_user: User = Depends(get_current_user),
                   db=Depends(get_db), engine: DistanceEngine = Depends(get_distance_engine)):
    return await session_lifecycle.check_in(
        db, engine, current_user, payload.latitude, payload.longitude, payload.accuracy, payload.note
    )


@api_router.get("/tracking/status")
async def tracking_status(current_user: User = Depends(get_current_user), db=Depends(get_db)):
    return await session_lifecycle.get_status(db, current_user)


@api_router.post("/tracking/checkout")
async def check_out(payload: CheckOutRequest, current_user: User = Depends(get_current_user),
                    db=Depends(get_db), engine: DistanceEngine = Depends(get_distance_engine)):
    return await session_lifecycle.check_out(
        db, engine, current_user, payload.session_id,
        payload.latitude, payload.longitude, payload.accuracy, payload.note,
    )


@api_router.patch("/tracking/checkout")
async def force_close(payload: ForceCloseRequest, current_user: User = Depends(get_current_user),
                      db=Depends(get_db), engine: DistanceEngine = Depends(get_distance_engine)):
    return await session_lifecycle.force_close(db, engine, current_user, payload.session_id, payload.reason)


# Coordinate ingestion
@api_router.post("/tracking/coordinates")
@api_router.post("/tracking/coordinates/batch")
async def ingest_coordinates(payload: CoordinateBatchRequest, current_user: User = Depends(get_current_user),
                             db=Depends(get_db), engine: DistanceEngine = Depends(get_distance_engine)):
    return await ingestion.ingest_batch(
        db, engine, current_user, payload.session_id, payload.coordinates, payload.sync_token
    )


@api_router.get("/tracking/coordinates/batch")
async def batch_status(session_id: Optional[str] = Query(None, alias="sessionId"),
                       current_user: User = Depends(get_current_user), db=Depends(get_db)):
    return await ingestion.batch_upload_status(db, current_user, session_id)


# Monitoring and history
@api_router.get("/tracking/live")
async def live_overview(user_id: Optional[str] = None, current_user: User = Depends(get_current_user),
                        db=Depends(get_db)):
    scope = await load_scope(db, current_user)
    return await live_monitoring.get_live_overview(db, scope, user_id=user_id)


@api_router.get("/tracking/sessions")
async def list_sessions(
    user_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    limit: int = Query(100, ge=1, le=1000),
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    scope = await load_scope(db, current_user)
    return await session_lifecycle.list_sessions(db, scope, user_id, status_filter, start_date, end_date, limit)


@api_router.get("/tracking/sessions/{session_id}")
async def get_session(session_id: str, current_user: User = Depends(get_current_user), db=Depends(get_db)):
    return await session_lifecycle.get_session_detail(db, current_user, session_id)


@api_router.post("/tracking/sessions/{session_id}/recalculate-distance")
async def recalculate_session_distance(session_id: str, current_user: User = Depends(get_current_user),
                                       db=Depends(get_db), engine: DistanceEngine = Depends(get_distance_engine)):
    detail = await session_lifecycle.recalculate_one(db, engine, current_user, session_id)
    return {"success": True, **detail}


@api_router.post("/tracking/recalculate-all")
async def recalculate_all(payload: Optional[RecalculateRequest] = None, admin: User = Depends(get_admin_user),
                          db=Depends(get_db), engine: DistanceEngine = Depends(get_distance_engine)):
    payload = payload or RecalculateRequest()
    results = await recalculate_closed_sessions(
        db, engine, force=payload.force, limit=payload.limit,
        delay_seconds=config.RECALC_DELAY_SECONDS, recalculated_by=admin.id,
    )
    return {
        "success": True,
        "message": f"Processed {results['processed']} sessions",
        "results": results,
    }


@api_router.get("/tracking/summaries")
async def list_summaries(
    user_id: Optional[str] = None,
    start_date: Optional[str] = None,
    end_date: Optional[str] = None,
    limit: int = Query(1000, ge=1, le=5000),
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    scope = await load_scope(db, current_user)
    return await daily_summary.list_summaries(db, scope, start_date, end_date, user_id, limit)


# Analytics
@api_router.get("/tracking/analytics/daily")
async def daily_analytics(user_id: Optional[str] = None, date: Optional[str] = None,
                          current_user: User = Depends(get_current_user), db=Depends(get_db)):
    return await gps_analytics.daily_report(db, current_user, user_id, date)


@api_router.get("/tracking/analytics/weekly")
async def weekly_analytics(user_id: Optional[str] = None,
                           week_start: Optional[str] = Query(None, alias="weekStart"),
                           current_user: User = Depends(get_current_user), db=Depends(get_db)):
    return await gps_analytics.weekly_report(db, current_user, user_id, week_start)


@api_router.get("/tracking/analytics/monthly")
async def monthly_analytics(user_id: Optional[str] = None, month: Optional[int] = None, year: Optional[int] = None,
                            current_user: User = Depends(get_current_user), db=Depends(get_db)):
    return await gps_analytics.monthly_report(db, current_user, user_id, month, year)


# Device error log
@api_router.post("/tracking/errors", status_code=status.HTTP_201_CREATED)
async def report_error(payload: ErrorReportCreate, current_user: User = Depends(get_current_user),
                       db=Depends(get_db)):
    return await error_reports.create_report(db, current_user, payload)


@api_router.get("/tracking/errors")
async def list_errors(
    session_id: Optional[str] = Query(None, alias="sessionId"),
    error_type: Optional[str] = Query(None, alias="errorType"),
    resolved: Optional[bool] = None,
    limit: int = 50,
    current_user: User = Depends(get_current_user),
    db=Depends(get_db),
):
    return await error_reports.list_reports(db, current_user, session_id, error_type, resolved, limit)


@api_router.patch("/tracking/errors")
async def resolve_errors(payload: ErrorResolveRequest, current_user: User = Depends(get_current_user),
                         db=Depends(get_db)):
    return await error_reports.resolve_reports(db, current_user, payload.error_ids, payload.resolution)


app.include_router(api_router)

app.add_middleware(
    CORSMiddleware,
    allow_credentials=True,
    allow_origins=config.CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.on_event("shutdown")
async def shutdown_db_client():
    # Let a running batch recalculation finish its current session and stop
    recalculation_stop.set()
    client.close()
