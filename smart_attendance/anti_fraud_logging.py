"""
Anti-Fraud Logging Module
Audit trail of attendance decisions and face-verification vetoes, used to spot
students who keep failing verification.
"""

import logging
from typing import Any, Dict, List, Optional

from motor.motor_asyncio import AsyncIOMotorCollection

from .exceptions import VetoError
from .models import AttendanceDecision, AttendanceStatus, Submission, utc_now

logger = logging.getLogger("anti_fraud")


class DecisionLogEntry:
    """Represents one attendance decision that produced a record."""

    def __init__(self, decision: AttendanceDecision):
        self.kind = "decision"
        self.student_id = decision.student_id
        self.class_id = decision.class_id
        self.status = decision.status.value
        self.flags = [
            {"type": f.type.value, "severity": f.severity.value, "description": f.description}
            for f in decision.flags
        ]
        self.outcomes = {
            "location": decision.location_outcome.passed,
            "face": decision.face_outcome.passed,
            "time": decision.time_outcome.passed,
        }
        self.submitted_at = decision.submitted_at
        self.logged_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        """Convert log entry to dictionary for storage."""
        return {
            "kind": self.kind,
            "student_id": self.student_id,
            "class_id": self.class_id,
            "status": self.status,
            "flags": self.flags,
            "outcomes": self.outcomes,
            "submitted_at": self.submitted_at,
            "logged_at": self.logged_at,
        }


class VetoLogEntry:
    """Represents one submission rejected by face verification."""

    def __init__(self, submission: Submission, error: VetoError):
        self.kind = "veto"
        self.student_id = submission.student_id
        self.class_id = submission.class_id
        self.message = error.message
        self.outcomes = {kind: outcome.passed for kind, outcome in error.outcomes.items()}
        self.flags = [
            {"type": f.type.value, "severity": f.severity.value, "description": f.description}
            for outcome in error.outcomes.values()
            for f in outcome.flags
        ]
        self.submitted_at = submission.submitted_at
        self.logged_at = utc_now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "student_id": self.student_id,
            "class_id": self.class_id,
            "message": self.message,
            "outcomes": self.outcomes,
            "flags": self.flags,
            "submitted_at": self.submitted_at,
            "logged_at": self.logged_at,
        }


class AntiFraudLogger:
    """
    Logs attendance decisions and vetoes for audit trail and fraud detection.

    Entries are always kept locally; when a Mongo collection is supplied they
    are inserted there too, and an insert failure does not fail the request.
    """

    def __init__(self, collection: Optional[AsyncIOMotorCollection] = None):
        """
        Args:
            collection: MongoDB collection for storing logs (optional)
        """
        self.collection = collection
        self.local_logs: List[Dict[str, Any]] = []

    async def _store(self, entry_dict: Dict[str, Any]):
        self.local_logs.append(entry_dict)
        if self.collection is not None:
            try:
                result = await self.collection.insert_one(dict(entry_dict))
                logger.debug(f"✅ Audit log stored in MongoDB: {result.inserted_id}")
            except Exception as e:
                logger.error(f"Failed to store audit log in MongoDB: {e}")

    async def log_decision(self, decision: AttendanceDecision):
        entry = DecisionLogEntry(decision).to_dict()
        logger.info(
            f"📊 Attendance decision - student={decision.student_id}, class={decision.class_id}, "
            f"status={decision.status.value}, flags={[f['type'] for f in entry['flags']]}"
        )
        await self._store(entry)

    async def log_veto(self, submission: Submission, error: VetoError):
        entry = VetoLogEntry(submission, error).to_dict()
        logger.info(
            f"🚫 Attendance vetoed - student={submission.student_id}, class={submission.class_id}, "
            f"reason={error.message}"
        )
        await self._store(entry)

    def get_local_logs(self) -> List[Dict[str, Any]]:
        """Get all locally stored logs."""
        return self.local_logs.copy()

    def clear_local_logs(self):
        self.local_logs.clear()
        logger.debug("Local logs cleared")

    async def get_user_logs(self, student_id: str, limit: int = 100) -> List[Dict[str, Any]]:
        """Most recent audit entries for a student, newest first."""
        if self.collection is None:
            mine = [log for log in self.local_logs if log["student_id"] == student_id]
            return sorted(mine, key=lambda log: log["logged_at"], reverse=True)[:limit]

        logs = []
        async for log in self.collection.find({"student_id": student_id}).sort("logged_at", -1).limit(limit):
            log["_id"] = str(log["_id"])
            logs.append(log)
        return logs

    async def detect_suspicious_activity(self, student_id: str, threshold: int = 5) -> Dict[str, Any]:
        """
        Flags a student as suspicious when vetoes or flagged decisions
        exceed threshold within the last 50 entries.
        """
        logs = await self.get_user_logs(student_id, limit=50)

        vetoes = sum(1 for log in logs if log["kind"] == "veto")
        flagged = sum(
            1 for log in logs
            if log["kind"] == "decision" and log["status"] == AttendanceStatus.FLAGGED.value
        )
        fake_gps = sum(
            1 for log in logs for flag in log.get("flags", []) if flag["type"] == "fake_gps"
        )

        reasons = []
        if vetoes > threshold:
            reasons.append(f"Face verification vetoes: {vetoes}.")
        if flagged > threshold:
            reasons.append(f"Flagged attendance records: {flagged}.")
        if fake_gps > threshold:
            reasons.append(f"GPS spoofing flags: {fake_gps}.")

        is_suspicious = bool(reasons)
        logger.info(
            f"🚨 Suspicious Activity Check - student={student_id}, is_suspicious={is_suspicious}, "
            f"vetoes={vetoes}, flagged={flagged}, fake_gps={fake_gps}"
        )
        return {
            "is_suspicious": is_suspicious,
            "reason": " ".join(reasons) if reasons else "No suspicious activity detected",
            "vetoes": vetoes,
            "flagged_records": flagged,
            "fake_gps_flags": fake_gps,
        }
