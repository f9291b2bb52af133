import os
from typing import List

from pydantic import BaseModel, Field

from .models import GeoPoint, Geofence


def _env_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip().lower() for item in raw.split(",") if item.strip()]


class Settings(BaseModel):
    """
    Runtime configuration for the verification engine and the API.

    Built once at process start with from_env() and injected everywhere
    else; nothing below reads the environment again.
    """

    # Geolocation
    college_latitude: float = 28.6139
    college_longitude: float = 77.2090
    college_radius_meters: float = Field(200, ge=5, le=1000)
    teacher_radius_meters: float = Field(20, ge=5, le=1000)

    # Face recognition
    face_similarity_threshold: float = 0.65
    face_match_distance: float = 0.6
    liveness_threshold: float = 0.5
    registration_liveness_threshold: float = 0.7
    min_enrolled_embeddings: int = 3
    max_face_images: int = 5
    extraction_timeout_seconds: float = 10.0
    face_extractor: str = "stub"
    models_dir: str = "models"

    # Attendance window
    window_before_minutes: int = 15
    window_after_minutes: int = 15
    lateness_threshold_minutes: int = 15

    # Duplicate-submission suppression
    max_attempts: int = 3
    attempt_window_minutes: int = 5

    # Spoofing
    spoof_keywords: List[str] = ["mock", "fake", "spoof", "test"]

    # Storage / auth
    mongo_uri: str = "mongodb://localhost:27017/"
    db_name: str = "smart_attendance"
    secret_key: str = "SMART_ATTENDANCE_SECRET"
    algorithm: str = "HS256"
    access_token_expire_minutes: int = 60

    @property
    def college_geofence(self) -> Geofence:
        return Geofence(
            center=GeoPoint(latitude=self.college_latitude, longitude=self.college_longitude),
            radius_meters=self.college_radius_meters,
            name="college_geofence",
        )

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            college_latitude=float(os.getenv("COLLEGE_LATITUDE", "28.6139")),
            college_longitude=float(os.getenv("COLLEGE_LONGITUDE", "77.2090")),
            college_radius_meters=float(os.getenv("COLLEGE_GEOFENCE_RADIUS", "200")),
            teacher_radius_meters=float(os.getenv("TEACHER_LOCATION_RADIUS", "20")),
            face_similarity_threshold=float(os.getenv("FACE_SIMILARITY_THRESHOLD", "0.65")),
            face_match_distance=float(os.getenv("FACE_MATCH_DISTANCE", "0.6")),
            liveness_threshold=float(os.getenv("LIVENESS_THRESHOLD", "0.5")),
            registration_liveness_threshold=float(os.getenv("REGISTRATION_LIVENESS_THRESHOLD", "0.7")),
            min_enrolled_embeddings=int(os.getenv("MIN_ENROLLED_EMBEDDINGS", "3")),
            max_face_images=int(os.getenv("MAX_FACE_IMAGES", "5")),
            extraction_timeout_seconds=float(os.getenv("EXTRACTION_TIMEOUT_SECONDS", "10")),
            face_extractor=os.getenv("FACE_EXTRACTOR", "stub").lower(),
            models_dir=os.getenv("MODELS_DIR", "models"),
            window_before_minutes=int(os.getenv("ATTENDANCE_WINDOW_BEFORE", "15")),
            window_after_minutes=int(os.getenv("ATTENDANCE_WINDOW_AFTER", "15")),
            lateness_threshold_minutes=int(os.getenv("LATENESS_THRESHOLD_MINUTES", "15")),
            max_attempts=int(os.getenv("MAX_ATTEMPTS", "3")),
            attempt_window_minutes=int(os.getenv("ATTEMPT_WINDOW_MINUTES", "5")),
            spoof_keywords=_env_list("SPOOF_KEYWORDS", "mock,fake,spoof,test"),
            mongo_uri=os.getenv("MONGO_URI", "mongodb://localhost:27017/"),
            db_name=os.getenv("DB_NAME", "smart_attendance"),
            secret_key=os.getenv("SECRET_KEY", "SMART_ATTENDANCE_SECRET"),
            algorithm=os.getenv("ALGORITHM", "HS256"),
            access_token_expire_minutes=int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", "60")),
        )
