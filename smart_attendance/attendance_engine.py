"""
Attendance Decision Engine
Runs the location, face and time checks for one submission and turns them
into a single decision: a record to store, or a veto when the face check fails.
"""

import asyncio
import logging
import math
from concurrent.futures import Executor
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence

from .anti_fraud_logging import AntiFraudLogger
from .config import Settings
from .database import AttendanceStore
from .exceptions import (
    DEFAULT_FACE_SUGGESTIONS,
    ClassNotFound,
    DuplicateAttendance,
    ExtractionError,
    ExtractorNotReady,
    NotEnrolled,
    SessionNotActive,
    TooManyAttempts,
    VetoError,
)
from .face_match import FaceMatcher, ensure_enrollment
from .face_model import FaceEmbeddingExtractor
from .geo import GeofenceEvaluator, accuracy_category, round_distance, validate_coordinates
from .liveness_detection import LivenessAssessor
from .models import (
    BLOCKING_SEVERITIES,
    AttendanceDecision,
    AttendanceStatus,
    AttendanceWindow,
    ClassSession,
    ExtractionResult,
    FaceEmbedding,
    Flag,
    FlagType,
    GeoPoint,
    Severity,
    Submission,
    VerificationOutcome,
    as_utc,
    attendance_date,
)
from .spoof_detect import SpoofDetector

logger = logging.getLogger(__name__)

LOW_SIMILARITY_LIMIT = 0.3
FAR_OFF_SCHEDULE_MINUTES = 60
TOTAL_CHECKS = 3


def minutes_late(submitted_at: datetime, class_start: datetime) -> int:
    elapsed = (as_utc(submitted_at) - as_utc(class_start)).total_seconds() / 60.0
    return max(0, math.floor(elapsed))


def evaluate_time_window(
    submitted_at: datetime,
    class_start: datetime,
    window: AttendanceWindow,
) -> VerificationOutcome:
    """
    Check the submission time against [start - before, start + after].

    Both bounds are inclusive. Outside the window the outcome fails with an
    unusual_time flag, high when more than an hour off schedule.
    """
    submitted = as_utc(submitted_at)
    start = as_utc(class_start)
    window_start = start - timedelta(minutes=window.before_minutes)
    window_end = start + timedelta(minutes=window.after_minutes)
    offset_minutes = (submitted - start).total_seconds() / 60.0
    passed = window_start <= submitted <= window_end

    flags: List[Flag] = []
    if not passed:
        direction = "after" if offset_minutes > 0 else "before"
        flags.append(Flag(
            type=FlagType.UNUSUAL_TIME,
            description=f"Attendance submitted {abs(offset_minutes):.1f} minutes {direction} class started",
            severity=Severity.HIGH if abs(offset_minutes) > FAR_OFF_SCHEDULE_MINUTES else Severity.MEDIUM,
            timestamp=submitted,
        ))

    return VerificationOutcome(
        kind="time",
        passed=passed,
        metrics={
            "minutes_offset": round(offset_minutes, 2),
            "window_before_minutes": float(window.before_minutes),
            "window_after_minutes": float(window.after_minutes),
        },
        evidence={
            "class_start_time": start.isoformat(),
            "window_start": window_start.isoformat(),
            "window_end": window_end.isoformat(),
            "submitted_at": submitted.isoformat(),
        },
        flags=tuple(flags),
    )


def resolve_status(
    outcomes: Sequence[VerificationOutcome],
    flags: Sequence[Flag],
    late_by: int,
    lateness_threshold: int = 15,
) -> AttendanceStatus:
    """Status for a submission whose face check already passed."""
    if any(f.severity in BLOCKING_SEVERITIES for f in flags):
        return AttendanceStatus.FLAGGED
    if all(o.passed for o in outcomes):
        return AttendanceStatus.PRESENT if late_by <= lateness_threshold else AttendanceStatus.LATE
    return AttendanceStatus.FLAGGED


def verification_summary(outcomes: Sequence[VerificationOutcome], flags: Sequence[Flag]) -> Dict[str, Any]:
    verified = sum(1 for o in outcomes if o.passed)
    if any(f.severity in BLOCKING_SEVERITIES for f in flags):
        status = "flagged"
    elif verified == TOTAL_CHECKS:
        status = "verified"
    elif verified > 0:
        status = "pending"
    else:
        status = "failed"
    return {
        "score": round(verified / TOTAL_CHECKS * 100),
        "status": status,
        "verified_checks": verified,
        "total_checks": TOTAL_CHECKS,
    }


class AttendanceDecisionEngine:
    """
    Decision pipeline for attendance submissions.

    Reads class sessions, enrolled embeddings and earlier records from the
    store. The only write is the attempt reservation made once every other
    precondition has passed; persisting the decision is the caller's job.
    """

    def __init__(
        self,
        extractor: FaceEmbeddingExtractor,
        store: AttendanceStore,
        settings: Optional[Settings] = None,
        audit_logger: Optional[AntiFraudLogger] = None,
        executor: Optional[Executor] = None,
    ):
        """
        Args:
            extractor: Face embedding model
            store: Sessions, embeddings, records and the attempt log
            settings: Thresholds and defaults (Settings() when omitted)
            audit_logger: Audit trail for decisions and vetoes
            executor: Thread pool for face extraction (loop default when None)
        """
        self.settings = settings or Settings()
        self.extractor = extractor
        self.store = store
        self.audit_logger = audit_logger
        self.executor = executor

        self.geofence = GeofenceEvaluator(self.settings.college_geofence, self.settings.teacher_radius_meters)
        self.spoof_detector = SpoofDetector(self.settings.spoof_keywords)
        self.matcher = FaceMatcher(self.settings.face_match_distance, self.settings.min_enrolled_embeddings)
        self.liveness = LivenessAssessor(threshold=self.settings.liveness_threshold)

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    async def _load_session(self, submission: Submission) -> ClassSession:
        session = await self.store.get_class_session(submission.class_id)
        if session is None:
            raise ClassNotFound(f"Class {submission.class_id} not found")
        roster = session.enrolled_student_ids
        if roster is not None and submission.student_id not in roster:
            logger.warning(f"🚫 Student {submission.student_id} is not enrolled in class {submission.class_id}")
            raise NotEnrolled(submission.student_id, submission.class_id)
        if session.status != "active" or session.session_start_time is None:
            raise SessionNotActive(
                "Class session is not active",
                ["Wait for the teacher to start the class session"],
            )
        if session.teacher_location is None:
            raise SessionNotActive(
                "Teacher location has not been recorded for this session",
                ["Ask the teacher to restart the session with location enabled"],
            )
        return session

    async def _check_not_recorded(self, submission: Submission):
        existing = await self.store.get_existing_record(
            submission.student_id,
            submission.class_id,
            attendance_date(submission.submitted_at),
        )
        if existing is not None:
            logger.warning(
                f"🚫 Duplicate attendance - student={submission.student_id}, "
                f"class={submission.class_id}, status={existing.get('status')}"
            )
            raise DuplicateAttendance(existing)

    async def _reserve_attempt(self, submission: Submission) -> int:
        """Record this attempt and return how many came before it in the window."""
        try:
            return await self.store.reserve_attempt(
                submission.student_id,
                submission.class_id,
                submission.location,
                as_utc(submission.submitted_at),
                self.settings.attempt_window_minutes,
                self.settings.max_attempts,
            )
        except TooManyAttempts as e:
            logger.warning(
                f"🚫 Too many attempts - student={submission.student_id}, "
                f"class={submission.class_id}, attempts={e.attempts}"
            )
            raise

    # ------------------------------------------------------------------
    # Location
    # ------------------------------------------------------------------

    def _location_outcome(
        self,
        submission: Submission,
        session: ClassSession,
        previous_location: Optional[GeoPoint],
        prior_attempts: int,
    ) -> VerificationOutcome:
        at = as_utc(submission.submitted_at)
        point = submission.location
        result = self.geofence.validate_student_location(point, session.teacher_location, session.geofence_radius)
        college, teacher = result["college"], result["teacher"]
        flags: List[Flag] = []

        if not teacher.within_fence:
            flags.append(Flag(
                type=FlagType.SUSPICIOUS_LOCATION,
                description=(
                    f"Student is {round_distance(teacher.distance_meters)}m away from teacher "
                    f"(max: {teacher.radius_meters}m)"
                ),
                severity=Severity.HIGH if teacher.excess_meters > teacher.radius_meters else Severity.MEDIUM,
                timestamp=at,
            ))
        if not college.within_fence:
            flags.append(Flag(
                type=FlagType.SUSPICIOUS_LOCATION,
                description=(
                    f"Student is {round_distance(college.distance_meters)}m from campus "
                    f"(max: {college.radius_meters}m)"
                ),
                severity=Severity.CRITICAL,
                timestamp=at,
            ))

        spoof = self.spoof_detector.detect(point, submission.device_info, previous_location, at=submission.submitted_at)
        if spoof.is_potential_spoof:
            flags.append(Flag(
                type=FlagType.FAKE_GPS,
                description=f"Potential GPS spoofing detected. Risk score: {spoof.risk_score}",
                severity=Severity.CRITICAL if spoof.risk_level == Severity.CRITICAL else Severity.HIGH,
                timestamp=at,
            ))

        if prior_attempts >= self.settings.max_attempts - 1:
            flags.append(Flag(
                type=FlagType.MULTIPLE_ATTEMPTS,
                description=(
                    f"{prior_attempts + 1} attendance attempts within "
                    f"{self.settings.attempt_window_minutes} minutes"
                ),
                severity=Severity.MEDIUM,
                timestamp=at,
            ))

        return VerificationOutcome(
            kind="location",
            passed=bool(result["passed"]),
            metrics={
                "distance_from_college": round_distance(college.distance_meters),
                "distance_from_teacher": round_distance(teacher.distance_meters),
                "college_excess": round_distance(college.excess_meters),
                "teacher_excess": round_distance(teacher.excess_meters),
                "spoof_risk_score": float(spoof.risk_score),
            },
            evidence={
                "college_geofence": college.within_fence,
                "teacher_proximity": teacher.within_fence,
                "college_radius": college.radius_meters,
                "teacher_radius": teacher.radius_meters,
                "accuracy_category": accuracy_category(point.accuracy),
                "spoofing": spoof.model_dump(mode="json"),
            },
            flags=tuple(flags),
        )

    # ------------------------------------------------------------------
    # Face
    # ------------------------------------------------------------------

    def _failed_extraction(self, message: str, suggestions: List[str], at: datetime) -> VerificationOutcome:
        logger.warning(f"❌ Face extraction failed: {message}")
        return VerificationOutcome(
            kind="face",
            passed=False,
            metrics={"similarity": 0.0},
            evidence={"error": message, "suggestions": suggestions},
            flags=(Flag(
                type=FlagType.FACE_MISMATCH,
                description=f"Face verification failed: {message}",
                severity=Severity.HIGH,
                timestamp=at,
            ),),
        )

    def _face_outcome(
        self, extraction: ExtractionResult, stored: List[FaceEmbedding], at: datetime
    ) -> VerificationOutcome:
        match = self.matcher.find_best_match(extraction.vector, stored)
        liveness = self.liveness.assess_extraction(extraction)
        threshold = self.settings.face_similarity_threshold
        similarity = match.best_similarity
        face_matched = similarity >= threshold
        flags: List[Flag] = []

        if not face_matched:
            flags.append(Flag(
                type=FlagType.FACE_MISMATCH,
                description=(
                    f"Face recognition confidence too low: {similarity * 100:.1f}% "
                    f"(minimum required: {threshold * 100:.0f}%)"
                ),
                severity=Severity.HIGH if similarity < LOW_SIMILARITY_LIMIT else Severity.MEDIUM,
                timestamp=at,
            ))
        if not liveness.is_live:
            flags.append(Flag(
                type=FlagType.FACE_LIVENESS_FAILED,
                description=f"Liveness check failed: score {liveness.score * 100:.1f}%",
                severity=Severity.HIGH,
                timestamp=at,
            ))

        metrics = {
            "similarity": similarity,
            "liveness_score": liveness.score,
            "detection_confidence": extraction.confidence,
        }
        if match.best_distance is not None:
            metrics["distance"] = match.best_distance

        return VerificationOutcome(
            kind="face",
            passed=face_matched and liveness.is_live,
            metrics=metrics,
            evidence={
                "is_match": match.is_match,
                "matched_index": match.matched_index,
                "compared_embeddings": len(match.all_similarities),
                "liveness_checks": liveness.checks,
                "liveness_method": liveness.method,
                "guidance": self.liveness.get_guidance_message(liveness),
            },
            flags=tuple(flags),
        )

    async def _verify_face(self, image: bytes, stored: List[FaceEmbedding], at: datetime) -> VerificationOutcome:
        loop = asyncio.get_running_loop()
        try:
            extraction = await asyncio.wait_for(
                loop.run_in_executor(self.executor, self.extractor.extract, image),
                timeout=self.settings.extraction_timeout_seconds,
            )
        except ExtractionError as e:
            return self._failed_extraction(e.message, e.suggestions or DEFAULT_FACE_SUGGESTIONS, at)
        except asyncio.TimeoutError:
            return self._failed_extraction("Face extraction timed out", ["Try again in a few moments"], at)
        return self._face_outcome(extraction, stored, at)

    # ------------------------------------------------------------------
    # Decision
    # ------------------------------------------------------------------

    async def _verify_location(self, submission, session, previous_location, prior_attempts) -> VerificationOutcome:
        return self._location_outcome(submission, session, previous_location, prior_attempts)

    async def _verify_time(self, submission: Submission, session: ClassSession) -> VerificationOutcome:
        window = session.attendance_window or AttendanceWindow(
            before_minutes=self.settings.window_before_minutes,
            after_minutes=self.settings.window_after_minutes,
        )
        return evaluate_time_window(submission.submitted_at, session.session_start_time, window)

    async def decide(self, submission: Submission) -> AttendanceDecision:
        """
        Verify a submission and build its decision.

        Returns:
            AttendanceDecision with status present, late or flagged

        Raises:
            InvalidCoordinate: location out of range
            ExtractorNotReady: face model not loaded
            ClassNotFound / SessionNotActive: no running session for the class
            NotEnrolled: the class roster does not list the student
            DuplicateAttendance: a record already exists for this class today
            InsufficientEnrollment: fewer than the required stored embeddings
            TooManyAttempts: attempt limit reached within the window
            VetoError: face verification failed; nothing should be stored
        """
        logger.info(f"📍 Attendance submission - student={submission.student_id}, class={submission.class_id}")

        validate_coordinates(submission.location)
        if not self.extractor.is_ready():
            raise ExtractorNotReady()
        session = await self._load_session(submission)
        await self._check_not_recorded(submission)
        stored = await self.store.get_user_embeddings(submission.student_id)
        ensure_enrollment(stored, self.settings.min_enrolled_embeddings)
        # read the last fix before this attempt is logged over it
        previous_location = submission.previous_location
        if previous_location is None:
            previous_location = await self.store.get_last_location(submission.student_id)
        prior_attempts = await self._reserve_attempt(submission)

        location_outcome, face_outcome, time_outcome = await asyncio.gather(
            self._verify_location(submission, session, previous_location, prior_attempts),
            self._verify_face(submission.face_image, stored, as_utc(submission.submitted_at)),
            self._verify_time(submission, session),
        )
        outcomes = (location_outcome, face_outcome, time_outcome)
        flags = [f for outcome in outcomes for f in outcome.flags]

        if not face_outcome.passed:
            suggestions = face_outcome.evidence.get("suggestions") or DEFAULT_FACE_SUGGESTIONS
            error = VetoError(
                "Face verification failed. Your face does not match the registered face.",
                {"location": location_outcome, "face": face_outcome, "time": time_outcome},
                suggestions=list(suggestions),
            )
            logger.warning(
                f"🚫 Attendance vetoed - student={submission.student_id}, "
                f"flags={[f.type.value for f in face_outcome.flags]}"
            )
            if self.audit_logger is not None:
                await self.audit_logger.log_veto(submission, error)
            raise error

        late_by = minutes_late(submission.submitted_at, session.session_start_time)
        status = resolve_status(outcomes, flags, late_by, self.settings.lateness_threshold_minutes)

        decision = AttendanceDecision(
            student_id=submission.student_id,
            class_id=submission.class_id,
            location_outcome=location_outcome,
            face_outcome=face_outcome,
            time_outcome=time_outcome,
            flags=tuple(flags),
            status=status,
            minutes_late=late_by,
            submitted_at=as_utc(submission.submitted_at),
            class_start_time=as_utc(session.session_start_time),
            verification_summary=verification_summary(outcomes, flags),
        )

        logger.info(
            f"✅ Attendance decision - student={submission.student_id}, status={status.value}, "
            f"minutes_late={late_by}, flags={[f.type.value for f in flags]}"
        )
        if self.audit_logger is not None:
            await self.audit_logger.log_decision(decision)
        return decision
