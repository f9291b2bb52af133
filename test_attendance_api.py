#!/usr/bin/env python3
"""
Test the attendance HTTP API with FastAPI's TestClient, the in-memory store
and the deterministic face extractor.
"""

import base64
import logging
from datetime import timedelta

from fastapi.testclient import TestClient

from smart_attendance.anti_fraud_logging import AntiFraudLogger
from smart_attendance.auth import create_access_token
from smart_attendance.config import Settings
from smart_attendance.database import InMemoryAttendanceStore
from smart_attendance.face_model import DeterministicEmbeddingExtractor, synthetic_landmarks
from smart_attendance.main import create_app
from smart_attendance.models import BoundingBox, ClassSession, ExtractionResult, GeoPoint, utc_now

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

SETTINGS = Settings()
QUERY = [0.1, 0.2, 0.3, 0.4]
FACE = b"registered-student-face"
STRANGER = b"someone-else"
BOX = BoundingBox(x=100, y=100, width=200, height=200)
LOCATION = {"latitude": 28.61393, "longitude": 77.20901, "accuracy": 8.5}
ENROLLMENT_PHOTOS = [b"enroll-front", b"enroll-left", b"enroll-right"]
WEAK_PHOTO = b"printed-photo"


def extraction(vector):
    return ExtractionResult(
        vector=vector, confidence=0.95, landmarks=synthetic_landmarks(BOX),
        bounding_box=BOX, image_width=640, image_height=480,
    )


def setup_client(ready=True, roster=None):
    store = InMemoryAttendanceStore()
    store.add_session(ClassSession(
        class_id="class-1",
        status="active",
        session_start_time=utc_now() - timedelta(minutes=2),
        teacher_location=GeoPoint(latitude=28.6139, longitude=77.2090),
        enrolled_student_ids=roster,
    ))
    store.add_embeddings("student-1", [[0.1 + d, 0.2, 0.3, 0.4] for d in (0.1, 0.2, 0.3)])

    extractor = DeterministicEmbeddingExtractor(dimensions=len(QUERY), ready=ready)
    extractor.register(FACE, extraction(QUERY))
    extractor.register(STRANGER, extraction([0.9, 0.2, 0.3, 0.4]))
    for i, image in enumerate(ENROLLMENT_PHOTOS, start=1):
        extractor.register(image, extraction([0.1 + i / 10, 0.2, 0.3, 0.4]))
    extractor.register(WEAK_PHOTO, ExtractionResult(
        vector=QUERY, confidence=0.4, landmarks=None,
        bounding_box=BOX, image_width=640, image_height=480,
    ))

    audit = AntiFraudLogger()
    app = create_app(settings=SETTINGS, store=store, extractor=extractor, audit_logger=audit)
    return TestClient(app), store, audit


def auth_headers(student_id="student-1"):
    token = create_access_token({"sub": student_id}, SETTINGS)
    return {"Authorization": f"Bearer {token}"}


def encode(image):
    return "data:image/jpeg;base64," + base64.b64encode(image).decode()


def body(image=FACE, location=None, class_id="class-1"):
    return {
        "class_id": class_id,
        "location": location or LOCATION,
        "face_image": encode(image),
        "device_info": {"user_agent": "Mozilla/5.0 (Linux; Android 14)", "device_type": "mobile"},
    }


def test_health():
    client, _, _ = setup_client()
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["services"]["models"] == "loaded"


def test_submit_present():
    client, store, audit = setup_client()
    response = client.post("/attendance/submit", json=body(), headers=auth_headers())
    assert response.status_code == 201, response.text

    data = response.json()
    assert data["success"] is True
    assert data["status"] == "present"
    assert data["verification_results"] == {"location": True, "face": True, "time": True}
    assert data["verification_summary"]["score"] == 100
    assert data["flags"] == []

    assert len(store.records) == 1
    assert store.records[0].student_id == "student-1"
    assert len(store.attempts) == 1
    assert audit.get_local_logs()[0]["kind"] == "decision"


def test_submit_vetoed():
    client, store, _ = setup_client()
    response = client.post("/attendance/submit", json=body(image=STRANGER), headers=auth_headers())
    assert response.status_code == 403

    detail = response.json()["detail"]
    assert detail["error_type"] == "veto_error"
    assert detail["verification_results"]["face"] is False
    assert len(detail["suggestions"]) == 5
    assert store.records == []
    # vetoed submissions still count toward the attempt limit
    assert len(store.attempts) == 1


def test_authentication_required():
    client, _, _ = setup_client()
    assert client.post("/attendance/submit", json=body()).status_code in (401, 403)

    response = client.post("/attendance/submit", json=body(), headers={"Authorization": "Bearer not-a-token"})
    assert response.status_code == 401


def test_invalid_coordinates():
    client, store, _ = setup_client()
    response = client.post(
        "/attendance/submit",
        json=body(location={"latitude": 95.0, "longitude": 77.2}),
        headers=auth_headers(),
    )
    assert response.status_code == 400
    assert response.json()["detail"]["error_type"] == "invalid_coordinate"

    response = client.post(
        "/attendance/submit",
        json=body(location={"latitude": 28.6, "longitude": 77.2, "accuracy": -5}),
        headers=auth_headers(),
    )
    assert response.status_code == 400
    assert store.attempts == []


def test_unknown_class():
    client, _, _ = setup_client()
    response = client.post("/attendance/submit", json=body(class_id="class-404"), headers=auth_headers())
    assert response.status_code == 404


def test_insufficient_enrollment():
    client, _, _ = setup_client()
    response = client.post("/attendance/submit", json=body(), headers=auth_headers("student-2"))
    assert response.status_code == 400
    assert response.json()["detail"]["error_type"] == "insufficient_enrollment"


def test_extractor_not_ready():
    client, _, _ = setup_client(ready=False)
    assert client.get("/health").json()["services"]["models"] == "not_loaded"
    response = client.post("/attendance/submit", json=body(), headers=auth_headers())
    assert response.status_code == 503


def test_too_many_attempts():
    client, store, _ = setup_client()
    for _ in range(3):
        assert client.post("/attendance/submit", json=body(image=STRANGER), headers=auth_headers()).status_code == 403

    response = client.post("/attendance/submit", json=body(), headers=auth_headers())
    assert response.status_code == 429
    assert response.json()["detail"]["error_type"] == "too_many_attempts"
    assert len(store.attempts) == 3
    assert store.records == []


def test_duplicate_submission_same_day():
    client, store, _ = setup_client()
    assert client.post("/attendance/submit", json=body(), headers=auth_headers()).status_code == 201

    response = client.post("/attendance/submit", json=body(), headers=auth_headers())
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["error_type"] == "duplicate_attendance"
    assert detail["existing_attendance"]["status"] == "present"
    assert len(store.records) == 1


def test_not_enrolled():
    client, store, _ = setup_client(roster=["student-9"])
    response = client.post("/attendance/submit", json=body(), headers=auth_headers())
    assert response.status_code == 404
    assert response.json()["detail"]["error_type"] == "not_enrolled"
    assert store.attempts == []


def test_suspicious_activity_endpoint():
    client, _, _ = setup_client()
    for _ in range(2):
        client.post("/attendance/submit", json=body(image=STRANGER), headers=auth_headers())

    response = client.get("/attendance/flags/student-1", headers=auth_headers())
    assert response.status_code == 200
    data = response.json()
    assert data["vetoes"] == 2
    assert not data["is_suspicious"]


def test_flags_of_another_student_are_forbidden():
    client, _, _ = setup_client()
    client.post("/attendance/submit", json=body(image=STRANGER), headers=auth_headers())

    response = client.get("/attendance/flags/student-1", headers=auth_headers("student-2"))
    assert response.status_code == 403


def test_face_register_then_submit():
    client, store, _ = setup_client()
    response = client.post(
        "/face/register",
        json={"images": [encode(image) for image in ENROLLMENT_PHOTOS]},
        headers=auth_headers("student-3"),
    )
    assert response.status_code == 201, response.text
    data = response.json()
    assert data["processed_images"] == 3
    assert data["validation_errors"] == []
    assert len(store.embeddings["student-3"]) == 3

    response = client.post("/attendance/submit", json=body(), headers=auth_headers("student-3"))
    assert response.status_code == 201, response.text
    assert response.json()["status"] == "present"

    # registering again is refused
    response = client.post(
        "/face/register",
        json={"images": [encode(image) for image in ENROLLMENT_PHOTOS]},
        headers=auth_headers("student-3"),
    )
    assert response.status_code == 400
    assert response.json()["detail"]["error_type"] == "registration_error"


def test_face_register_rejects_weak_liveness():
    client, store, _ = setup_client()
    response = client.post(
        "/face/register",
        json={"images": [encode(image) for image in ENROLLMENT_PHOTOS[:2] + [WEAK_PHOTO]]},
        headers=auth_headers("student-3"),
    )
    assert response.status_code == 400
    detail = response.json()["detail"]
    assert detail["error_type"] == "registration_error"
    assert [e["image_index"] for e in detail["validation_errors"]] == [3]
    assert "student-3" not in store.embeddings


def test_face_register_needs_three_images():
    client, _, _ = setup_client()
    response = client.post(
        "/face/register",
        json={"images": [encode(ENROLLMENT_PHOTOS[0])]},
        headers=auth_headers("student-3"),
    )
    assert response.status_code == 400
    assert "At least 3" in response.json()["detail"]["message"]


def main():
    """Run all tests"""
    tests = [obj for name, obj in sorted(globals().items()) if name.startswith("test_") and callable(obj)]
    for test in tests:
        test()
        logger.info(f"✅ {test.__name__}")
    logger.info(f"All {len(tests)} API tests passed!")


if __name__ == "__main__":
    main()
