import base64
import binascii
import logging
from typing import Any, Dict, List, Optional

import cv2
import numpy as np

from .exceptions import ExtractionError

logger = logging.getLogger(__name__)

MIN_IMAGE_SIZE = 160
MAX_IMAGE_SIZE = 1024
MIN_BRIGHTNESS = 50
MAX_BRIGHTNESS = 230
MIN_CONTRAST = 20


def decode_base64_image(image_b64: str) -> bytes:
    """
    Strip a data-URL prefix, fix padding and decode.

    Raises:
        ExtractionError: if the payload is not valid base64
    """
    clean_b64 = image_b64.strip()
    if clean_b64.startswith("data:"):
        clean_b64 = clean_b64.split(",", 1)[1]

    padding = 4 - (len(clean_b64) % 4)
    if padding != 4:
        clean_b64 += "=" * padding

    try:
        return base64.b64decode(clean_b64)
    except (binascii.Error, ValueError) as e:
        raise ExtractionError(
            f"Invalid image data: {e}",
            ["Try again with a different image"],
        )


def decode_image(image_bytes: bytes) -> np.ndarray:
    """Bytes -> BGR image; raises ExtractionError when OpenCV cannot decode it."""
    arr = np.frombuffer(image_bytes, np.uint8)
    img = cv2.imdecode(arr, cv2.IMREAD_COLOR) if arr.size else None
    if img is None:
        raise ExtractionError(
            "Invalid image format or corrupted image data",
            ["Try again with a different image"],
        )
    return img


def limit_image_size(img: np.ndarray, max_size: int = MAX_IMAGE_SIZE) -> np.ndarray:
    h, w = img.shape[:2]
    if max(h, w) <= max_size:
        return img
    scale = max_size / float(max(h, w))
    return cv2.resize(img, (int(w * scale), int(h * scale)), interpolation=cv2.INTER_AREA)


def check_image_quality(img: np.ndarray) -> Dict[str, Any]:
    """
    Resolution, aspect ratio, brightness and contrast checks.

    Returns:
        dict: is_valid, reason, suggestions and the measured quality values
    """
    h, w = img.shape[:2]
    issues: List[str] = []
    suggestions: List[str] = []

    if w < MIN_IMAGE_SIZE or h < MIN_IMAGE_SIZE:
        issues.append(f"Image resolution too low (minimum {MIN_IMAGE_SIZE}x{MIN_IMAGE_SIZE} pixels)")
        suggestions.append("Use a higher resolution image")

    aspect_ratio = w / float(h)
    if aspect_ratio > 2 or aspect_ratio < 0.5:
        issues.append("Unusual image aspect ratio - may not contain a proper face view")
        suggestions.append("Ensure the image shows a clear face view")

    channels = img.reshape(-1, img.shape[2]) if img.ndim == 3 else img.reshape(-1, 1)
    brightness = float(np.mean(channels.mean(axis=0)))
    contrast = float(np.mean(channels.std(axis=0)))

    if brightness < MIN_BRIGHTNESS:
        issues.append("Image too dark")
        suggestions.append("Improve lighting conditions")
    elif brightness > MAX_BRIGHTNESS:
        issues.append("Image too bright")
        suggestions.append("Reduce lighting or avoid direct flash")

    if contrast < MIN_CONTRAST:
        issues.append("Poor image contrast - facial features may not be clear")
        suggestions.append("Ensure good lighting with adequate contrast")

    is_valid = not issues
    logger.info(f"🔍 Image quality - {w}x{h}, Brightness: {brightness:.1f}, Contrast: {contrast:.1f}")
    if not is_valid:
        logger.warning(f"❌ Image quality issues: {'; '.join(issues)}")

    return {
        "is_valid": is_valid,
        "reason": "Image quality is acceptable" if is_valid else "; ".join(issues),
        "suggestions": suggestions,
        "quality": {
            "width": w,
            "height": h,
            "brightness": brightness,
            "contrast": contrast,
            "aspect_ratio": aspect_ratio,
        },
    }


def validate_image_quality(img: np.ndarray) -> None:
    """Raise ExtractionError with remediation suggestions when quality is too low."""
    report = check_image_quality(img)
    if not report["is_valid"]:
        raise ExtractionError(report["reason"], report["suggestions"])


def eye_center(points: np.ndarray) -> Optional[np.ndarray]:
    if points is None or len(points) == 0:
        return None
    return np.mean(points, axis=0)
