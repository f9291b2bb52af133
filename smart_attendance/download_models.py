#!/usr/bin/env python3
"""
Download the face detection and landmark models used by the ONNX extractor.

    python -m smart_attendance.download_models [models_dir]

The embedding model (face_embedding.onnx) is deployment-specific and must be
placed in the same directory by hand.
"""

import logging
import os
import sys
from typing import Dict

import requests

from .face_model import EMBEDDING_MODEL, FACE_YUNET_MODEL, LANDMARK_MODEL

logger = logging.getLogger(__name__)

MODEL_URLS = {
    LANDMARK_MODEL: "https://raw.githubusercontent.com/kurnianggoro/GSOC2017/master/data/lbfmodel.yaml",
    FACE_YUNET_MODEL: (
        "https://raw.githubusercontent.com/opencv/opencv_zoo/main/models/"
        "face_detection_yunet/face_detection_yunet_2023mar.onnx"
    ),
}


def download_model(name: str, url: str, models_dir: str = "models", timeout: int = 60) -> bool:
    """Download one model file unless it is already present."""
    os.makedirs(models_dir, exist_ok=True)
    path = os.path.join(models_dir, name)

    if os.path.exists(path):
        logger.info(f"✅ {name} already exists at {path}")
        return True

    try:
        logger.info(f"📥 Downloading {name} from {url}...")
        response = requests.get(url, timeout=timeout)
        response.raise_for_status()

        with open(path, "wb") as f:
            f.write(response.content)

        logger.info(f"✅ Successfully downloaded {name} to {path}")
        return True

    except requests.RequestException as e:
        logger.error(f"❌ Failed to download {name}: {e}")
        return False


def download_all(models_dir: str = "models") -> Dict[str, bool]:
    return {name: download_model(name, url, models_dir) for name, url in MODEL_URLS.items()}


def main() -> int:
    logging.basicConfig(level=logging.INFO)
    models_dir = sys.argv[1] if len(sys.argv) > 1 else os.getenv("MODELS_DIR", "models")
    results = download_all(models_dir)

    print("\n--- Model Download Summary ---")
    for name, ok in results.items():
        print(f"{'✅' if ok else '❌'} {name}")
    if not os.path.exists(os.path.join(models_dir, EMBEDDING_MODEL)):
        print(f"⚠️ {EMBEDDING_MODEL} not found in {models_dir}; the ONNX extractor will not be ready")
    return 0 if all(results.values()) else 1


if __name__ == "__main__":
    sys.exit(main())
