"""
Liveness Detection Components
Single-image liveness heuristics from facial landmark geometry, face size and
detector confidence.
"""

import logging
from typing import Any, Dict, Optional, Sequence

import numpy as np

from .models import BoundingBox, ExtractionResult, LivenessResult
from .utils import eye_center

logger = logging.getLogger(__name__)

FULL_LANDMARK_COUNT = 68


class LivenessAssessor:
    """
    Combines four independent sub-checks on top of a 0.5 base score:

    - landmark_quality: a full 68-point landmark set (+0.15)
    - face_size: face covers 5%-80% of the image (+0.15)
    - symmetry: eye spacing within 20%-60% of face width (+0.10)
    - texture_analysis: detector confidence above 0.8 (+0.10)

    A face is live when the score is strictly above the threshold.
    """

    BASE_SCORE = 0.5
    LANDMARK_WEIGHT = 0.15
    FACE_SIZE_WEIGHT = 0.15
    SYMMETRY_WEIGHT = 0.10
    TEXTURE_WEIGHT = 0.10

    def __init__(
        self,
        threshold: float = 0.5,
        min_face_ratio: float = 0.05,
        max_face_ratio: float = 0.8,
        min_eye_ratio: float = 0.2,
        max_eye_ratio: float = 0.6,
        confidence_threshold: float = 0.8,
    ):
        """
        Initialize LivenessAssessor.

        Args:
            threshold: Score the result must exceed (attendance 0.5, registration 0.7)
            min_face_ratio: Lower bound of face area / image area
            max_face_ratio: Upper bound of face area / image area
            min_eye_ratio: Lower bound of eye distance / face width
            max_eye_ratio: Upper bound of eye distance / face width
            confidence_threshold: Detector confidence needed for the texture check
        """
        self.threshold = threshold
        self.min_face_ratio = min_face_ratio
        self.max_face_ratio = max_face_ratio
        self.min_eye_ratio = min_eye_ratio
        self.max_eye_ratio = max_eye_ratio
        self.confidence_threshold = confidence_threshold

    def _eye_spacing_ok(self, points: np.ndarray, face_width: float) -> bool:
        if len(points) < 48 or face_width <= 0:
            return False
        left = eye_center(points[36:42])
        right = eye_center(points[42:48])
        eye_distance = abs(float(left[0]) - float(right[0]))
        return face_width * self.min_eye_ratio < eye_distance < face_width * self.max_eye_ratio

    def assess(
        self,
        landmarks: Optional[Sequence[Sequence[float]]],
        confidence: float,
        bounding_box: BoundingBox,
        image_width: int,
        image_height: int,
    ) -> LivenessResult:
        """
        Score a single detected face.

        Args:
            landmarks: 2D landmark points (68 expected for a full set)
            confidence: Face detector confidence
            bounding_box: Detected face box
            image_width: Source image width in pixels
            image_height: Source image height in pixels

        Returns:
            LivenessResult; malformed input yields score 0 and is_live False
        """
        try:
            checks = {
                "landmark_quality": False,
                "face_size": False,
                "symmetry": False,
                "texture_analysis": False,
            }
            score = self.BASE_SCORE

            points = np.asarray(landmarks, dtype=np.float64) if landmarks is not None else np.empty((0, 2))
            if points.size and (points.ndim != 2 or points.shape[1] != 2):
                raise ValueError(f"landmarks must be 2D points, got shape {points.shape}")
            if not np.all(np.isfinite(points)):
                raise ValueError("landmarks contain non-finite values")

            if len(points) >= FULL_LANDMARK_COUNT:
                checks["landmark_quality"] = True
                score += self.LANDMARK_WEIGHT

            image_area = float(image_width) * float(image_height)
            face_area = float(bounding_box.width) * float(bounding_box.height)
            if image_area > 0:
                face_ratio = face_area / image_area
                if self.min_face_ratio < face_ratio < self.max_face_ratio:
                    checks["face_size"] = True
                    score += self.FACE_SIZE_WEIGHT

            if self._eye_spacing_ok(points, float(bounding_box.width)):
                checks["symmetry"] = True
                score += self.SYMMETRY_WEIGHT

            if confidence > self.confidence_threshold:
                checks["texture_analysis"] = True
                score += self.TEXTURE_WEIGHT

            score = min(score, 1.0)
            is_live = score > self.threshold

            logger.debug(f"Liveness assessment: score={score:.3f}, is_live={is_live}, checks={checks}")
            return LivenessResult(is_live=is_live, score=score, checks=checks, method="combined")

        except Exception as e:
            logger.error(f"Liveness verification error: {e}")
            return LivenessResult(is_live=False, score=0.0, checks={}, method="error")

    def assess_extraction(self, extraction: ExtractionResult) -> LivenessResult:
        return self.assess(
            landmarks=extraction.landmarks,
            confidence=extraction.confidence,
            bounding_box=extraction.bounding_box,
            image_width=extraction.image_width,
            image_height=extraction.image_height,
        )

    def get_guidance_message(self, result: LivenessResult) -> str:
        if result.is_live:
            return "Liveness verified"
        failed: Dict[str, Any] = {k: v for k, v in result.checks.items() if not v}
        if "face_size" in failed:
            return "Move so that your face fills a reasonable part of the frame"
        if "landmark_quality" in failed or "symmetry" in failed:
            return "Look straight at the camera with your whole face visible"
        return "Improve lighting and hold the camera steady"
