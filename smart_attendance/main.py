"""
Smart Attendance API
HTTP surface over the decision engine. Run with:

    python -m uvicorn smart_attendance.main:create_app --factory --host 0.0.0.0 --port 8001
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError

from .anti_fraud_logging import AntiFraudLogger
from .attendance_engine import AttendanceDecisionEngine
from .auth import get_current_student_id
from .config import Settings
from .database import AttendanceStore, MongoAttendanceStore
from .exceptions import (
    AttendanceError,
    ClassNotFound,
    DuplicateAttendance,
    ExtractionError,
    ExtractorNotReady,
    InsufficientEnrollment,
    InvalidCoordinate,
    RegistrationError,
    SessionNotActive,
    TooManyAttempts,
    UserNotFound,
    VetoError,
)
from .face_model import FaceEmbeddingExtractor, build_extractor
from .face_registration import FaceRegistrar
from .models import (
    AttendanceDecision,
    AttendanceSubmitRequest,
    DeviceInfo,
    FaceRegisterRequest,
    GeoPoint,
    Submission,
    utc_now,
)
from .utils import decode_base64_image

# ======================
# LOGGING
# ======================
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("attendance")

ERROR_STATUS = {
    InvalidCoordinate: 400,
    InsufficientEnrollment: 400,
    SessionNotActive: 400,
    ExtractionError: 400,
    DuplicateAttendance: 400,
    RegistrationError: 400,
    VetoError: 403,
    ClassNotFound: 404,
    UserNotFound: 404,
    TooManyAttempts: 429,
    ExtractorNotReady: 503,
}


def http_error(error: AttendanceError) -> HTTPException:
    status_code = next(
        (code for error_class, code in ERROR_STATUS.items() if isinstance(error, error_class)),
        400,
    )
    return HTTPException(status_code=status_code, detail=error.to_dict())


def decision_response(decision: AttendanceDecision, attendance_id: str) -> Dict[str, Any]:
    outcomes = {
        "location": decision.location_outcome,
        "face": decision.face_outcome,
        "time": decision.time_outcome,
    }
    return {
        "success": True,
        "attendance_id": attendance_id,
        "status": decision.status.value,
        "minutes_late": decision.minutes_late,
        "flags": [f.model_dump(mode="json") for f in decision.flags],
        "verification_summary": decision.verification_summary,
        "verification_results": {kind: o.passed for kind, o in outcomes.items()},
        "outcomes": {kind: o.model_dump(mode="json") for kind, o in outcomes.items()},
    }


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[AttendanceStore] = None,
    extractor: Optional[FaceEmbeddingExtractor] = None,
    audit_logger: Optional[AntiFraudLogger] = None,
) -> FastAPI:
    """Wire settings, storage and the face model into a FastAPI app."""
    settings = settings or Settings.from_env()
    if store is None:
        store = MongoAttendanceStore.connect(settings.mongo_uri, settings.db_name)
    if audit_logger is None:
        collection = store.db.anti_fraud_logs if isinstance(store, MongoAttendanceStore) else None
        audit_logger = AntiFraudLogger(collection=collection)
    if extractor is None:
        extractor = build_extractor(settings)

    # ThreadPoolExecutor for CPU-bound face extraction
    executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="face_processor")
    engine = AttendanceDecisionEngine(extractor, store, settings, audit_logger=audit_logger, executor=executor)
    registrar = FaceRegistrar(extractor, store, settings, executor=executor)

    app = FastAPI(title="Smart Attendance Backend")
    app.state.settings = settings
    app.state.store = store
    app.state.extractor = extractor
    app.state.audit_logger = audit_logger
    app.state.engine = engine
    app.state.registrar = registrar

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.on_event("startup")
    async def startup_event():
        """Log configuration on startup"""
        logger.info("=" * 60)
        logger.info("🚀 Smart Attendance Backend Starting")
        logger.info("=" * 60)
        logger.info(
            f"📍 College geofence: ({settings.college_latitude}, {settings.college_longitude}) "
            f"radius {settings.college_radius_meters}m, teacher radius {settings.teacher_radius_meters}m"
        )
        logger.info(
            f"🧠 Face: extractor={settings.face_extractor}, ready={extractor.is_ready()}, "
            f"similarity>={settings.face_similarity_threshold}, liveness>{settings.liveness_threshold} "
            f"(registration>{settings.registration_liveness_threshold})"
        )
        logger.info(f"🔁 Attempt limit: {settings.max_attempts} per {settings.attempt_window_minutes} minutes")
        if isinstance(store, MongoAttendanceStore):
            await store.ensure_indexes()
        logger.info("=" * 60)

    @app.on_event("shutdown")
    async def shutdown_event():
        executor.shutdown(wait=False)

    @app.get("/")
    def root():
        return {"status": "Smart Attendance Backend Running"}

    @app.get("/health")
    async def health_check():
        """Health check endpoint"""
        ready = extractor.is_ready()
        return {
            "status": "healthy" if ready else "degraded",
            "timestamp": utc_now().isoformat(),
            "services": {
                "database": type(store).__name__,
                "models": "loaded" if ready else "not_loaded",
            },
        }

    @app.post("/attendance/submit", status_code=201)
    async def submit_attendance(
        data: AttendanceSubmitRequest,
        student_id: str = Depends(get_current_student_id),
    ):
        try:
            location = GeoPoint(**data.location.model_dump())
            previous = GeoPoint(**data.previous_location.model_dump()) if data.previous_location else None
            image = decode_base64_image(data.face_image)
        except AttendanceError as e:
            raise http_error(e)
        except ValidationError as e:
            raise HTTPException(status_code=400, detail=f"Invalid location: {e.errors()[0]['msg']}")

        submission = Submission(
            student_id=student_id,
            class_id=data.class_id,
            location=location,
            face_image=image,
            device_info=data.device_info or DeviceInfo(),
            submitted_at=utc_now(),
            previous_location=previous,
        )

        try:
            decision = await engine.decide(submission)
            attendance_id = await store.save_decision(decision)
        except VetoError as e:
            raise http_error(e)
        except AttendanceError as e:
            logger.warning(f"❌ Attendance rejected - student={student_id}: {e.message}")
            raise http_error(e)

        return decision_response(decision, attendance_id)

    @app.get("/attendance/flags/{student_id}")
    async def suspicious_activity(student_id: str, current: str = Depends(get_current_student_id)):
        if student_id != current:
            raise HTTPException(status_code=403, detail="You can only view your own activity summary")
        return await audit_logger.detect_suspicious_activity(student_id)

    @app.post("/face/register", status_code=201)
    async def register_face(data: FaceRegisterRequest, user_id: str = Depends(get_current_student_id)):
        try:
            images = [decode_base64_image(image) for image in data.images]
            result = await registrar.register(user_id, images)
        except AttendanceError as e:
            logger.warning(f"❌ Face registration rejected - user={user_id}: {e.message}")
            raise http_error(e)

        return {
            "success": True,
            "message": "Face images registered successfully",
            "processed_images": result.registered,
            "total_submitted": result.submitted,
            "validation_errors": result.validation_errors,
            "face_data": result.processed_images,
        }

    return app
