#!/usr/bin/env python3
"""
Test single-image liveness heuristics
"""

import logging

from smart_attendance.face_model import synthetic_landmarks
from smart_attendance.liveness_detection import LivenessAssessor
from smart_attendance.models import BoundingBox, ExtractionResult

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BOX = BoundingBox(x=100, y=100, width=200, height=200)
assessor = LivenessAssessor(threshold=0.5)


def test_all_checks_pass():
    result = assessor.assess(synthetic_landmarks(BOX), 0.95, BOX, 640, 480)
    assert result.checks == {
        "landmark_quality": True,
        "face_size": True,
        "symmetry": True,
        "texture_analysis": True,
    }
    assert abs(result.score - 1.0) < 1e-9
    assert result.is_live
    assert result.method == "combined"
    assert assessor.get_guidance_message(result) == "Liveness verified"


def test_base_score_alone_is_not_live():
    tiny = BoundingBox(x=0, y=0, width=10, height=10)
    result = assessor.assess(None, 0.5, tiny, 640, 480)
    assert not any(result.checks.values())
    assert result.score == 0.5
    # strictly greater than the threshold is required
    assert not result.is_live


def test_registration_threshold_is_stricter():
    # face size only: 0.5 + 0.15
    attendance = assessor.assess(None, 0.5, BOX, 640, 480)
    assert abs(attendance.score - 0.65) < 1e-9
    assert attendance.is_live

    registration = LivenessAssessor(threshold=0.7).assess(None, 0.5, BOX, 640, 480)
    assert not registration.is_live


def test_face_size_bounds():
    whole_frame = BoundingBox(x=0, y=0, width=640, height=480)
    result = assessor.assess(None, 0.5, whole_frame, 640, 480)
    assert not result.checks["face_size"]
    assert "frame" in assessor.get_guidance_message(result)


def test_eye_spacing_out_of_range():
    landmarks = synthetic_landmarks(BOX)
    # both eyes on the same vertical line
    landmarks[42:48] = landmarks[36:42]
    result = assessor.assess(landmarks, 0.95, BOX, 640, 480)
    assert result.checks["landmark_quality"]
    assert not result.checks["symmetry"]
    assert abs(result.score - 0.9) < 1e-9


def test_partial_landmarks():
    result = assessor.assess(synthetic_landmarks(BOX)[:40], 0.95, BOX, 640, 480)
    assert not result.checks["landmark_quality"]
    assert not result.checks["symmetry"]


def test_malformed_input_never_raises():
    for landmarks in ([[1.0, 2.0, 3.0]], [[float("nan"), 1.0]] * 68):
        result = assessor.assess(landmarks, 0.95, BOX, 640, 480)
        assert result.score == 0.0
        assert not result.is_live
        assert result.method == "error"


def test_assess_extraction():
    extraction = ExtractionResult(
        vector=[0.0] * 4,
        confidence=0.95,
        landmarks=synthetic_landmarks(BOX),
        bounding_box=BOX,
        image_width=640,
        image_height=480,
    )
    assert assessor.assess_extraction(extraction).is_live


def main():
    """Run all tests"""
    tests = [obj for name, obj in sorted(globals().items()) if name.startswith("test_") and callable(obj)]
    for test in tests:
        test()
        logger.info(f"✅ {test.__name__}")
    logger.info(f"All {len(tests)} liveness tests passed!")


if __name__ == "__main__":
    main()
