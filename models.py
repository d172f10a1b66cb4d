from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import uuid

from pydantic import BaseModel, ConfigDict, Field

# Roles
ROLE_ADMIN = "admin"
ROLE_TEAM_LEAD = "team_lead"
ROLE_EMPLOYEE = "employee"

# Session statuses
STATUS_ACTIVE = "active"
STATUS_COMPLETED = "completed"
STATUS_AUTO_CLOSED = "auto_closed"
STATUS_FORCE_CLOSED = "force_closed"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def iso(dt: datetime) -> str:
    """Serialize a datetime the way it is stored (UTC, fixed precision, sortable)."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_dt(value) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def _encode(value):
    if isinstance(value, datetime):
        return iso(value)
    if isinstance(value, dict):
        return {k: _encode(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_encode(v) for v in value]
    return value


def to_document(model: BaseModel) -> Dict[str, Any]:
    """Dump a model for Mongo, datetimes as ISO strings."""
    return _encode(model.model_dump())


class Location(BaseModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = None


class User(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    email: Optional[str] = None
    first_name: str
    last_name: str = ""
    role: str = ROLE_EMPLOYEE  # 'admin', 'team_lead' or 'employee'
    region_id: Optional[str] = None
    reports_to: Optional[str] = None  # id of the team lead
    active: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class TrackingSession(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    user_name: str = ""

    check_in: datetime
    start_location: Optional[Location] = None

    check_out: Optional[datetime] = None
    end_location: Optional[Location] = None

    total_distance_km: float = 0.0
    calculation_method: Optional[str] = None
    route_accuracy: Optional[str] = None
    route_data: Optional[str] = None  # opaque JSON owned by the distance engine
    estimated_duration_minutes: Optional[float] = None

    status: str = STATUS_ACTIVE
    close_reason: Optional[str] = None
    closed_by: Optional[str] = None
    needs_review: bool = False
    note: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)


class LocationSample(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    session_id: str
    user_id: str
    latitude: float
    longitude: float
    timestamp: datetime
    accuracy: Optional[float] = None
    speed: Optional[float] = None  # km/h as reported by the device
    altitude: Optional[float] = None
    seq: int = 0  # storage order within the session, breaks timestamp ties


class DailySummary(BaseModel):
    model_config = ConfigDict(extra="ignore")
    user_id: str
    date: str  # YYYY-MM-DD (UTC)
    total_distance_km: float = 0.0
    total_hours: float = 0.0
    total_visits: int = 0
    total_business: float = 0.0
    check_in_count: int = 0


class ErrorReport(BaseModel):
    model_config = ConfigDict(extra="ignore")
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user_id: str
    session_id: Optional[str] = None
    error_type: str
    error_message: str
    error_data: Optional[Dict[str, Any]] = None
    device_info: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=utcnow)
    resolved: bool = False
    resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)


# Request bodies. Field aliases follow the mobile client's camelCase payloads.

class CheckInRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    latitude: Any = None
    longitude: Any = None
    accuracy: Any = None
    note: Optional[str] = None


class CheckOutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    latitude: Any = None
    longitude: Any = None
    accuracy: Any = None
    note: Optional[str] = None


class ForceCloseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    reason: Optional[str] = None


class CoordinateBatchRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    coordinates: Optional[List[Any]] = None
    sync_token: Optional[str] = Field(default=None, alias="syncToken")


class RecalculateRequest(BaseModel):
    force: bool = False
    limit: int = Field(default=50, ge=1, le=500)


class ErrorReportCreate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    session_id: Optional[str] = Field(default=None, alias="sessionId")
    error_type: Any = Field(default=None, alias="errorType")
    error_message: Any = Field(default=None, alias="errorMessage")
    error_data: Optional[Any] = Field(default=None, alias="errorData")
    device_info: Optional[Dict[str, Any]] = Field(default=None, alias="deviceInfo")
    timestamp: Optional[datetime] = None


class ErrorResolveRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    error_ids: Optional[List[str]] = Field(default=None, alias="errorIds")
    resolution: Optional[str] = None
