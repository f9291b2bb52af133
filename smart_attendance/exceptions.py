"""
Attendance Errors
Exception taxonomy shared by the verification pipeline and the HTTP layer.
"""

from typing import Dict, List, Optional, Any

DEFAULT_FACE_SUGGESTIONS = [
    "Ensure good lighting on your face",
    "Look directly at the camera",
    "Remove any obstructions (glasses, mask, etc.)",
    "Make sure only your face is visible in the frame",
    "If problem persists, re-register your face",
]


class AttendanceError(Exception):
    """Base class for every verification-domain failure."""

    def __init__(self, message: str, suggestions: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.suggestions = list(suggestions or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": False,
            "error_type": self.error_type,
            "message": self.message,
            "suggestions": self.suggestions,
        }

    @property
    def error_type(self) -> str:
        name = type(self).__name__
        return "".join("_" + c.lower() if c.isupper() else c for c in name).lstrip("_")


class InvalidCoordinate(AttendanceError):
    """Latitude/longitude out of range or not a finite number."""


class InsufficientEnrollment(AttendanceError):
    def __init__(self, found: int, required: int = 3):
        super().__init__(
            f"At least {required} registered face images are required, found {found}",
            ["Register your face from the profile page before marking attendance"],
        )
        self.found = found
        self.required = required


class ExtractionError(AttendanceError):
    """No face, several faces, or an image below the quality bar."""


class DimensionMismatch(AttendanceError):
    def __init__(self, left: int, right: int):
        super().__init__(f"Embedding dimensions do not match: {left} vs {right}")
        self.left = left
        self.right = right


class VetoError(AttendanceError):
    """
    Face verification failed: the submission is rejected and no record is stored.

    Carries the outcomes computed before the veto so the client can still
    show location and time diagnostics.
    """

    def __init__(self, message: str, outcomes: Dict[str, Any], suggestions: Optional[List[str]] = None):
        super().__init__(message, suggestions if suggestions is not None else DEFAULT_FACE_SUGGESTIONS)
        self.outcomes = outcomes

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["verification_results"] = {
            kind: outcome.passed for kind, outcome in self.outcomes.items()
        }
        payload["outcomes"] = {
            kind: outcome.model_dump(mode="json") for kind, outcome in self.outcomes.items()
        }
        return payload


class TooManyAttempts(AttendanceError):
    def __init__(self, attempts: int, window_minutes: int):
        super().__init__(
            f"Too many attendance attempts. Please wait {window_minutes} minutes before trying again.",
            [f"Wait {window_minutes} minutes before submitting again"],
        )
        self.attempts = attempts
        self.window_minutes = window_minutes


class ExtractorNotReady(AttendanceError):
    def __init__(self):
        super().__init__(
            "Face recognition service is not ready. Please try again later.",
            ["Try again in a few moments"],
        )


class SessionNotActive(AttendanceError):
    """The class has no running session to mark attendance against."""


class ClassNotFound(AttendanceError):
    pass


class NotEnrolled(ClassNotFound):
    def __init__(self, student_id: str, class_id: str):
        super().__init__(
            "Class not found or you are not enrolled",
            ["Check that you are enrolled in this class"],
        )
        self.student_id = student_id
        self.class_id = class_id


class DuplicateAttendance(AttendanceError):
    """Attendance for this class was already recorded today."""

    def __init__(self, existing: Optional[Dict[str, Any]] = None):
        super().__init__("Attendance already submitted for this class today")
        self.existing = existing or {}

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        timestamp = self.existing.get("submitted_at")
        payload["existing_attendance"] = {
            "status": self.existing.get("status"),
            "timestamp": timestamp.isoformat() if hasattr(timestamp, "isoformat") else timestamp,
        }
        return payload


class UserNotFound(AttendanceError):
    pass


class RegistrationError(AttendanceError):
    """Face registration rejected; per-image problems are listed in validation_errors."""

    def __init__(
        self,
        message: str,
        validation_errors: Optional[List[Dict[str, Any]]] = None,
        suggestions: Optional[List[str]] = None,
    ):
        super().__init__(message, suggestions)
        self.validation_errors = list(validation_errors or [])

    def to_dict(self) -> Dict[str, Any]:
        payload = super().to_dict()
        payload["validation_errors"] = self.validation_errors
        return payload
