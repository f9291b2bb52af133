#!/usr/bin/env python3
"""
Test settings loading from the environment
"""

import logging
import os

from smart_attendance.config import Settings

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def with_env(values, fn):
    saved = {key: os.environ.get(key) for key in values}
    os.environ.update(values)
    try:
        return fn()
    finally:
        for key, value in saved.items():
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = value


def test_defaults():
    settings = Settings()
    assert settings.college_radius_meters == 200
    assert settings.teacher_radius_meters == 20
    assert settings.face_similarity_threshold == 0.65
    assert settings.liveness_threshold == 0.5
    assert settings.registration_liveness_threshold == 0.7
    assert settings.max_face_images == 5
    assert settings.max_attempts == 3
    assert settings.attempt_window_minutes == 5
    assert settings.face_extractor == "stub"

    fence = settings.college_geofence
    assert (fence.center.latitude, fence.center.longitude) == (28.6139, 77.2090)
    assert fence.radius_meters == 200


def test_from_env():
    settings = with_env(
        {
            "COLLEGE_LATITUDE": "16.0046",
            "COLLEGE_LONGITUDE": "108.2499",
            "COLLEGE_GEOFENCE_RADIUS": "100",
            "MAX_ATTEMPTS": "5",
            "FACE_EXTRACTOR": "ONNX",
            "SPOOF_KEYWORDS": "Mock, gpsjoystick ,",
        },
        Settings.from_env,
    )
    assert settings.college_latitude == 16.0046
    assert settings.college_geofence.radius_meters == 100
    assert settings.max_attempts == 5
    assert settings.face_extractor == "onnx"
    assert settings.spoof_keywords == ["mock", "gpsjoystick"]


def main():
    """Run all tests"""
    tests = [obj for name, obj in sorted(globals().items()) if name.startswith("test_") and callable(obj)]
    for test in tests:
        test()
        logger.info(f"✅ {test.__name__}")
    logger.info(f"All {len(tests)} config tests passed!")


if __name__ == "__main__":
    main()
