#!/usr/bin/env python3
"""
Test GPS spoofing heuristics
"""

import logging
from datetime import datetime, timedelta, timezone

from smart_attendance.models import DeviceInfo, GeoPoint, Severity
from smart_attendance.spoof_detect import SpoofDetector, decimal_places, risk_level_for

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

T0 = datetime(2026, 3, 2, 8, 0, tzinfo=timezone.utc)
detector = SpoofDetector()


def indicator_types(result):
    return [i.type for i in result.indicators]


def test_decimal_places():
    assert decimal_places(28.614) == 3
    assert decimal_places(28.6139) == 4
    assert decimal_places(77.0) == 0
    assert decimal_places(100.0) == 0
    assert decimal_places(28.613912) == 6


def test_clean_fix_scores_zero():
    location = GeoPoint(latitude=28.613912, longitude=77.209023, accuracy=8.5)
    result = detector.detect(location, DeviceInfo(user_agent="Mozilla/5.0 (Linux; Android 14)"))
    assert result.risk_score == 0
    assert result.risk_level == Severity.LOW
    assert not result.is_potential_spoof
    assert result.indicators == ()


def test_impossible_speed_with_coarse_coordinates():
    """10 km in 10 seconds from a fix with three decimals on both axes."""
    previous = GeoPoint(latitude=28.524, longitude=77.209, captured_at=T0)
    current = GeoPoint(latitude=28.614, longitude=77.209, captured_at=T0 + timedelta(seconds=10))

    result = detector.detect(current, previous_location=previous)
    assert indicator_types(result) == ["impossible_speed", "suspicious_coordinate_precision"]
    assert result.risk_score == 55
    assert result.risk_level == Severity.CRITICAL
    assert result.is_potential_spoof
    assert result.indicators[0].value > 200


def test_speed_uses_submission_time_when_fix_has_none():
    previous = GeoPoint(latitude=28.524123, longitude=77.209123, captured_at=T0)
    current = GeoPoint(latitude=28.614123, longitude=77.209123)

    result = detector.detect(current, previous_location=previous, at=T0 + timedelta(seconds=10))
    assert "impossible_speed" in indicator_types(result)

    result = detector.detect(current, previous_location=previous, at=T0 + timedelta(hours=2))
    assert "impossible_speed" not in indicator_types(result)


def test_speed_check_skipped_without_elapsed_time():
    previous = GeoPoint(latitude=28.524123, longitude=77.209123, captured_at=T0)
    same_instant = GeoPoint(latitude=28.614123, longitude=77.209123, captured_at=T0)
    earlier = GeoPoint(latitude=28.614123, longitude=77.209123, captured_at=T0 - timedelta(seconds=5))

    assert detector.detect(same_instant, previous_location=previous).risk_score == 0
    assert detector.detect(earlier, previous_location=previous).risk_score == 0
    assert detector.detect(same_instant, previous_location=previous.model_copy(update={"captured_at": None})).risk_score == 0


def test_accuracy_indicators():
    too_good = detector.detect(GeoPoint(latitude=28.613912, longitude=77.209023, accuracy=0.5))
    assert indicator_types(too_good) == ["suspiciously_high_accuracy"]
    assert too_good.risk_score == 20
    assert too_good.risk_level == Severity.MEDIUM
    assert not too_good.is_potential_spoof

    zero = detector.detect(GeoPoint(latitude=28.613912, longitude=77.209023, accuracy=0))
    assert zero.risk_score == 20

    poor = detector.detect(GeoPoint(latitude=28.613912, longitude=77.209023, accuracy=1500))
    assert indicator_types(poor) == ["poor_gps_accuracy"]
    assert poor.risk_score == 10
    assert poor.risk_level == Severity.LOW


def test_mock_location_user_agent():
    location = GeoPoint(latitude=28.613912, longitude=77.209023, accuracy=8.5)
    result = detector.detect(location, DeviceInfo(user_agent="MockLocation/2.1 (Android)"))
    assert indicator_types(result) == ["mock_location_user_agent"]
    assert result.risk_score == 30
    assert result.risk_level == Severity.HIGH
    assert result.is_potential_spoof

    custom = SpoofDetector(keywords=["gpsjoystick"])
    assert custom.detect(location, DeviceInfo(user_agent="MockLocation/2.1")).risk_score == 0
    assert custom.detect(location, DeviceInfo(user_agent="GPSJoystick")).risk_score == 30


def test_overly_precise_coordinates():
    result = detector.detect(GeoPoint(latitude=28.61391234567891, longitude=77.209023))
    assert indicator_types(result) == ["suspicious_coordinate_precision"]
    assert result.risk_score == 15
    assert result.risk_level == Severity.MEDIUM


def test_score_is_capped():
    previous = GeoPoint(latitude=28.524, longitude=77.209, captured_at=T0)
    current = GeoPoint(latitude=28.614, longitude=77.209, accuracy=0.5, captured_at=T0 + timedelta(seconds=10))
    result = detector.detect(current, DeviceInfo(user_agent="FakeGPS"), previous)
    assert len(result.indicators) == 4
    assert result.risk_score == 100
    assert result.risk_level == Severity.CRITICAL


def test_risk_levels():
    assert risk_level_for(0) == Severity.LOW
    assert risk_level_for(14) == Severity.LOW
    assert risk_level_for(15) == Severity.MEDIUM
    assert risk_level_for(30) == Severity.HIGH
    assert risk_level_for(49) == Severity.HIGH
    assert risk_level_for(50) == Severity.CRITICAL


def main():
    """Run all tests"""
    tests = [obj for name, obj in sorted(globals().items()) if name.startswith("test_") and callable(obj)]
    for test in tests:
        test()
        logger.info(f"✅ {test.__name__}")
    logger.info(f"All {len(tests)} spoof detection tests passed!")


if __name__ == "__main__":
    main()
