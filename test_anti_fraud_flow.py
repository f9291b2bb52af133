#!/usr/bin/env python3
"""
Test the anti-fraud audit trail: decision and veto entries, storage failures
and the suspicious-activity summary.
"""

import asyncio
import logging
from datetime import datetime, timezone
from types import SimpleNamespace

from smart_attendance.anti_fraud_logging import AntiFraudLogger, DecisionLogEntry, VetoLogEntry
from smart_attendance.exceptions import VetoError
from smart_attendance.models import (
    AttendanceDecision,
    AttendanceStatus,
    Flag,
    FlagType,
    GeoPoint,
    Severity,
    Submission,
    VerificationOutcome,
)

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

START = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)


def make_decision(student_id="student-1", flags=()):
    flagged = any(f.severity in (Severity.HIGH, Severity.CRITICAL) for f in flags)
    return AttendanceDecision(
        student_id=student_id,
        class_id="class-1",
        location_outcome=VerificationOutcome(kind="location", passed=True, flags=tuple(flags)),
        face_outcome=VerificationOutcome(kind="face", passed=True),
        time_outcome=VerificationOutcome(kind="time", passed=True),
        flags=tuple(flags),
        status=AttendanceStatus.FLAGGED if flagged else AttendanceStatus.PRESENT,
        submitted_at=START,
        class_start_time=START,
    )


def make_veto(student_id="student-1"):
    submission = Submission(
        student_id=student_id,
        class_id="class-1",
        location=GeoPoint(latitude=28.61393, longitude=77.20901),
        face_image=b"face",
        submitted_at=START,
    )
    mismatch = Flag(type=FlagType.FACE_MISMATCH, description="too low", severity=Severity.HIGH)
    error = VetoError(
        "Face verification failed. Your face does not match the registered face.",
        {
            "location": VerificationOutcome(kind="location", passed=True),
            "face": VerificationOutcome(kind="face", passed=False, flags=(mismatch,)),
            "time": VerificationOutcome(kind="time", passed=True),
        },
    )
    return submission, error


class FailingCollection:
    """Stands in for a Mongo collection whose writes fail."""

    async def insert_one(self, document):
        raise RuntimeError("connection refused")


class RecordingCollection:
    def __init__(self):
        self.documents = []

    async def insert_one(self, document):
        self.documents.append(document)
        return SimpleNamespace(inserted_id=len(self.documents))


def test_log_entry_classes():
    fake_gps = Flag(type=FlagType.FAKE_GPS, description="spoof", severity=Severity.CRITICAL)
    entry = DecisionLogEntry(make_decision(flags=[fake_gps])).to_dict()
    assert entry["kind"] == "decision"
    assert entry["status"] == "flagged"
    assert entry["flags"] == [{"type": "fake_gps", "severity": "critical", "description": "spoof"}]
    assert entry["outcomes"] == {"location": True, "face": True, "time": True}

    submission, error = make_veto()
    veto = VetoLogEntry(submission, error).to_dict()
    assert veto["kind"] == "veto"
    assert veto["outcomes"]["face"] is False
    assert veto["flags"][0]["type"] == "face_mismatch"


def test_local_logging():
    audit = AntiFraudLogger(collection=None)

    async def run():
        await audit.log_decision(make_decision())
        await audit.log_veto(*make_veto())
        return await audit.get_user_logs("student-1")

    logs = asyncio.run(run())
    assert len(audit.get_local_logs()) == 2
    assert {log["kind"] for log in logs} == {"decision", "veto"}

    audit.clear_local_logs()
    assert audit.get_local_logs() == []


def test_mongo_insert_failure_is_not_raised():
    audit = AntiFraudLogger(collection=FailingCollection())
    asyncio.run(audit.log_decision(make_decision()))
    assert len(audit.get_local_logs()) == 1


def test_mongo_insert():
    collection = RecordingCollection()
    audit = AntiFraudLogger(collection=collection)
    asyncio.run(audit.log_veto(*make_veto()))
    assert collection.documents[0]["kind"] == "veto"
    assert collection.documents[0]["student_id"] == "student-1"


def test_detect_suspicious_activity():
    audit = AntiFraudLogger()
    fake_gps = Flag(type=FlagType.FAKE_GPS, description="spoof", severity=Severity.HIGH)

    async def run():
        for _ in range(3):
            await audit.log_veto(*make_veto())
        await audit.log_decision(make_decision(flags=[fake_gps]))
        await audit.log_decision(make_decision(student_id="student-2"))
        return (
            await audit.detect_suspicious_activity("student-1", threshold=2),
            await audit.detect_suspicious_activity("student-2", threshold=2),
        )

    suspicious, clean = asyncio.run(run())
    assert suspicious["is_suspicious"]
    assert suspicious["vetoes"] == 3
    assert suspicious["flagged_records"] == 1
    assert suspicious["fake_gps_flags"] == 1
    assert "vetoes" in suspicious["reason"]

    assert not clean["is_suspicious"]
    assert clean["reason"] == "No suspicious activity detected"


def main():
    """Run all tests"""
    tests = [obj for name, obj in sorted(globals().items()) if name.startswith("test_") and callable(obj)]
    for test in tests:
        test()
        logger.info(f"✅ {test.__name__}")
    logger.info(f"All {len(tests)} anti-fraud tests passed!")


if __name__ == "__main__":
    main()
