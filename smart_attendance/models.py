import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, Field, field_validator, model_validator

from .exceptions import InvalidCoordinate


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Mongo hands back naive datetimes; treat them as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def attendance_date(value: datetime) -> str:
    """Calendar day (UTC, YYYY-MM-DD) an attendance record is filed under."""
    return as_utc(value).date().isoformat()


# ======================
# ENUMS
# ======================

class FlagType(str, Enum):
    SUSPICIOUS_LOCATION = "suspicious_location"
    FACE_MISMATCH = "face_mismatch"
    FAKE_GPS = "fake_gps"
    MULTIPLE_ATTEMPTS = "multiple_attempts"
    UNUSUAL_TIME = "unusual_time"
    DEVICE_MISMATCH = "device_mismatch"
    IP_MISMATCH = "ip_mismatch"
    FACE_LIVENESS_FAILED = "face_liveness_failed"


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class AttendanceStatus(str, Enum):
    PRESENT = "present"
    LATE = "late"
    FLAGGED = "flagged"


BLOCKING_SEVERITIES = (Severity.HIGH, Severity.CRITICAL)


# ======================
# LOCATION
# ======================

class GeoPoint(BaseModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = Field(None, ge=0, description="GPS accuracy in meters")
    captured_at: Optional[datetime] = None

    class Config:
        frozen = True

    @field_validator("latitude")
    @classmethod
    def _check_latitude(cls, v: float) -> float:
        if not math.isfinite(v):
            raise InvalidCoordinate("Coordinates cannot be NaN or infinite")
        if v < -90 or v > 90:
            raise InvalidCoordinate("Latitude must be between -90 and 90 degrees")
        return v

    @field_validator("longitude")
    @classmethod
    def _check_longitude(cls, v: float) -> float:
        if not math.isfinite(v):
            raise InvalidCoordinate("Coordinates cannot be NaN or infinite")
        if v < -180 or v > 180:
            raise InvalidCoordinate("Longitude must be between -180 and 180 degrees")
        return v


class Geofence(BaseModel):
    center: GeoPoint
    radius_meters: float = Field(..., ge=5, le=1000)
    name: str = "geofence"

    class Config:
        frozen = True


class GeofenceResult(BaseModel):
    within_fence: bool
    distance_meters: float
    excess_meters: float
    radius_meters: float
    name: str = "geofence"

    class Config:
        frozen = True


class SpoofIndicator(BaseModel):
    type: str
    description: str
    severity: Severity
    value: Any = None

    class Config:
        frozen = True


class SpoofCheckResult(BaseModel):
    is_potential_spoof: bool
    risk_score: int
    risk_level: Severity
    indicators: Tuple[SpoofIndicator, ...] = ()

    class Config:
        frozen = True


class DeviceInfo(BaseModel):
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    device_type: Literal["mobile", "tablet", "desktop", "unknown"] = "unknown"
    platform: Optional[str] = None
    browser: Optional[str] = None


# ======================
# FACE
# ======================

class FaceEmbedding(BaseModel):
    vector: List[float]
    source_image_ref: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now)


class BoundingBox(BaseModel):
    x: float
    y: float
    width: float
    height: float


class ExtractionResult(BaseModel):
    """What the embedding model hands back for the single face in an image."""
    vector: List[float]
    confidence: float
    landmarks: Optional[List[Tuple[float, float]]] = None
    bounding_box: BoundingBox
    image_width: int
    image_height: int


class Comparison(BaseModel):
    distance: float
    similarity: float
    error: Optional[str] = None


class MatchResult(BaseModel):
    best_similarity: float = 0.0
    best_distance: Optional[float] = None
    matched_index: int = -1
    is_match: bool = False
    all_similarities: List[float] = []


class LivenessResult(BaseModel):
    is_live: bool
    score: float = Field(..., ge=0, le=1)
    checks: Dict[str, bool] = {}
    method: str = "combined"

    class Config:
        frozen = True


# ======================
# CLASS SESSION
# ======================

class AttendanceWindow(BaseModel):
    before_minutes: int = Field(15, ge=0)
    after_minutes: int = Field(15, ge=0)


class ClassSession(BaseModel):
    class_id: str
    status: str = "active"
    session_start_time: Optional[datetime] = None
    teacher_location: Optional[GeoPoint] = None
    geofence_radius: Optional[float] = Field(None, ge=5, le=1000)
    attendance_window: Optional[AttendanceWindow] = None
    # None means the class keeps no roster and anyone may submit
    enrolled_student_ids: Optional[List[str]] = None


# ======================
# DECISION
# ======================

class Flag(BaseModel):
    type: FlagType
    description: str
    severity: Severity = Severity.MEDIUM
    timestamp: datetime = Field(default_factory=utc_now)

    class Config:
        frozen = True


class VerificationOutcome(BaseModel):
    kind: Literal["location", "face", "time"]
    passed: bool
    metrics: Dict[str, float] = {}
    evidence: Dict[str, Any] = {}
    flags: Tuple[Flag, ...] = ()

    class Config:
        frozen = True


class Submission(BaseModel):
    student_id: str
    class_id: str
    location: GeoPoint
    face_image: bytes
    device_info: DeviceInfo = Field(default_factory=DeviceInfo)
    submitted_at: datetime = Field(default_factory=utc_now)
    previous_location: Optional[GeoPoint] = None


class AttendanceDecision(BaseModel):
    student_id: str
    class_id: str
    location_outcome: VerificationOutcome
    face_outcome: VerificationOutcome
    time_outcome: VerificationOutcome
    flags: Tuple[Flag, ...] = ()
    status: AttendanceStatus
    minutes_late: int = 0
    submitted_at: datetime
    class_start_time: datetime
    verification_summary: Dict[str, Any] = {}

    class Config:
        frozen = True

    @model_validator(mode="after")
    def _check_invariants(self):
        if self.status in (AttendanceStatus.PRESENT, AttendanceStatus.LATE) and not self.face_outcome.passed:
            raise ValueError("present/late requires a passing face outcome")
        if any(f.severity in BLOCKING_SEVERITIES for f in self.flags) and self.status != AttendanceStatus.FLAGGED:
            raise ValueError("high or critical flags require status 'flagged'")
        return self

    def to_record(self) -> Dict[str, Any]:
        """Document shape handed to the storage layer."""
        record = self.model_dump(mode="json")
        record["submitted_at"] = self.submitted_at
        record["class_start_time"] = self.class_start_time
        record["attendance_date"] = attendance_date(self.submitted_at)
        return record


# ======================
# API PAYLOADS
# ======================

class LocationPayload(BaseModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = None
    captured_at: Optional[datetime] = None


class AttendanceSubmitRequest(BaseModel):
    class_id: str = Field(..., description="Class ID for attendance")
    location: LocationPayload
    face_image: str = Field(..., description="Base64 encoded image")
    device_info: Optional[DeviceInfo] = None
    previous_location: Optional[LocationPayload] = None

    class Config:
        json_schema_extra = {
            "example": {
                "class_id": "65a1f0c2e4b0a1b2c3d4e5f6",
                "location": {"latitude": 28.61391, "longitude": 77.20902, "accuracy": 8.5},
                "face_image": "data:image/jpeg;base64,/9j/4AAQSkZJRgABAQEAYABgAAD...",
                "device_info": {"user_agent": "Mozilla/5.0 (Linux; Android 14)", "device_type": "mobile"},
            }
        }


class FaceRegisterRequest(BaseModel):
    images: List[str] = Field(..., description="Base64 encoded face images")

    class Config:
        json_schema_extra = {
            "example": {
                "images": [
                    "data:image/jpeg;base64,/9j/4AAQSkZJRgABAQEAYABgAAD...",
                    "data:image/jpeg;base64,/9j/4AAQSkZJRgABAQEAYABgAAE...",
                    "data:image/jpeg;base64,/9j/4AAQSkZJRgABAQEAYABgAAF...",
                ]
            }
        }


class RegistrationResult(BaseModel):
    user_id: str
    registered: int
    submitted: int
    processed_images: List[Dict[str, Any]] = []
    validation_errors: List[Dict[str, Any]] = []
