"""
GPS Spoofing Heuristics
Scores a location fix for signs of mock-location apps or fabricated coordinates.
The result is advisory: it can raise a fake_gps flag but never fails the
location check by itself.
"""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Iterable, List, Optional

from .geo import haversine_distance_meters
from .models import DeviceInfo, GeoPoint, Severity, SpoofCheckResult, SpoofIndicator, as_utc

logger = logging.getLogger(__name__)

MAX_PLAUSIBLE_SPEED_KMH = 200.0
HIGH_ACCURACY_LIMIT_M = 1.0
POOR_ACCURACY_LIMIT_M = 1000.0
MIN_PLAUSIBLE_DECIMALS = 3
MAX_PLAUSIBLE_DECIMALS = 10
SPOOF_RISK_THRESHOLD = 30

DEFAULT_KEYWORDS = ("mock", "fake", "spoof", "test")


def decimal_places(value: float) -> int:
    """Digits after the point in the shortest round-trip form of value."""
    exponent = Decimal(repr(float(value))).normalize().as_tuple().exponent
    return max(0, -exponent)


def risk_level_for(score: int) -> Severity:
    if score >= 50:
        return Severity.CRITICAL
    if score >= 30:
        return Severity.HIGH
    if score >= 15:
        return Severity.MEDIUM
    return Severity.LOW


class SpoofDetector:
    """
    Cumulative risk score (0-100) from independent heuristics:

    - impossible speed between two fixes (+40)
    - GPS accuracy suspiciously good (+20) or very poor (+10)
    - mock-location keyword in the user agent (+30)
    - coordinate precision outside the plausible band (+15)
    """

    def __init__(self, keywords: Optional[Iterable[str]] = None):
        self.keywords: List[str] = [k.lower() for k in (keywords or DEFAULT_KEYWORDS)]

    def _speed_indicator(
        self,
        location: GeoPoint,
        previous: Optional[GeoPoint],
        at: Optional[datetime],
    ) -> Optional[SpoofIndicator]:
        if previous is None or previous.captured_at is None:
            return None
        current_time = location.captured_at or at
        if current_time is None:
            return None

        elapsed = (as_utc(current_time) - as_utc(previous.captured_at)).total_seconds()
        if elapsed <= 0:
            logger.debug(f"Skipping speed check, non-positive interval between fixes: {elapsed}s")
            return None

        distance = haversine_distance_meters(previous, location)
        speed_kmh = distance / elapsed * 3.6
        if speed_kmh <= MAX_PLAUSIBLE_SPEED_KMH:
            return None
        return SpoofIndicator(
            type="impossible_speed",
            description=f"Calculated speed of {speed_kmh:.2f} km/h is unrealistic",
            severity=Severity.HIGH,
            value=round(speed_kmh, 2),
        )

    def detect(
        self,
        location: GeoPoint,
        device_info: Optional[DeviceInfo] = None,
        previous_location: Optional[GeoPoint] = None,
        at: Optional[datetime] = None,
    ) -> SpoofCheckResult:
        """
        Analyze a fix for spoofing indicators.

        Args:
            location: Current GPS fix
            device_info: Client device metadata (user agent is inspected)
            previous_location: Earlier fix with captured_at, for the speed check
            at: Submission time, used when the current fix has no captured_at

        Returns:
            SpoofCheckResult with score, level and the indicators that fired
        """
        indicators: List[SpoofIndicator] = []
        score = 0

        speed = self._speed_indicator(location, previous_location, at)
        if speed is not None:
            indicators.append(speed)
            score += 40

        accuracy = location.accuracy
        if accuracy is not None:
            if accuracy < HIGH_ACCURACY_LIMIT_M:
                indicators.append(SpoofIndicator(
                    type="suspiciously_high_accuracy",
                    description=f"GPS accuracy of {accuracy}m is unusually high",
                    severity=Severity.MEDIUM,
                    value=accuracy,
                ))
                score += 20
            elif accuracy > POOR_ACCURACY_LIMIT_M:
                indicators.append(SpoofIndicator(
                    type="poor_gps_accuracy",
                    description=f"GPS accuracy of {accuracy}m is very poor",
                    severity=Severity.LOW,
                    value=accuracy,
                ))
                score += 10

        user_agent = (device_info.user_agent if device_info else None) or ""
        if user_agent:
            lowered = user_agent.lower()
            if any(keyword in lowered for keyword in self.keywords):
                indicators.append(SpoofIndicator(
                    type="mock_location_user_agent",
                    description="User agent contains mock location keywords",
                    severity=Severity.HIGH,
                    value=user_agent,
                ))
                score += 30

        lat_decimals = decimal_places(location.latitude)
        lon_decimals = decimal_places(location.longitude)
        too_coarse = lat_decimals <= MIN_PLAUSIBLE_DECIMALS and lon_decimals <= MIN_PLAUSIBLE_DECIMALS
        too_fine = lat_decimals > MAX_PLAUSIBLE_DECIMALS or lon_decimals > MAX_PLAUSIBLE_DECIMALS
        if too_coarse or too_fine:
            indicators.append(SpoofIndicator(
                type="suspicious_coordinate_precision",
                description="Coordinate precision suggests potential spoofing",
                severity=Severity.MEDIUM,
                value={"lat_decimals": lat_decimals, "lon_decimals": lon_decimals},
            ))
            score += 15

        score = min(100, score)
        level = risk_level_for(score)
        result = SpoofCheckResult(
            is_potential_spoof=score >= SPOOF_RISK_THRESHOLD,
            risk_score=score,
            risk_level=level,
            indicators=tuple(indicators),
        )

        if result.is_potential_spoof:
            logger.warning(
                f"⚠️ Potential GPS spoofing: score={score}, level={level.value}, "
                f"indicators={[i.type for i in indicators]}"
            )
        return result
