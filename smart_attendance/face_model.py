"""
Face Embedding Extractors
Capability interface for the embedding model plus its two implementations:
the ONNX/OpenCV production model and a deterministic stand-in for tests and
local development. Which one runs is decided once, from configuration.
"""

import hashlib
import logging
import os
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple, Union

import cv2
import numpy as np
import onnxruntime as ort

from .config import Settings
from .exceptions import ExtractionError
from .models import BoundingBox, ExtractionResult
from .utils import decode_image, limit_image_size, validate_image_quality

logger = logging.getLogger(__name__)

FACE_YUNET_MODEL = "face_detection_yunet_2023mar.onnx"
LANDMARK_MODEL = "lbfmodel.yaml"
EMBEDDING_MODEL = "face_embedding.onnx"
EMBEDDING_INPUT_SIZE = (112, 112)

NO_FACE_SUGGESTIONS = [
    "Ensure your face is clearly visible",
    "Improve lighting conditions",
    "Move closer to the camera",
]
MULTIPLE_FACES_SUGGESTIONS = [
    "Make sure only your face is visible in the frame",
    "Ask others to step out of the camera view",
]


class FaceEmbeddingExtractor(ABC):
    """Black-box model: image bytes in, one face's embedding and geometry out."""

    @abstractmethod
    def is_ready(self) -> bool:
        ...

    @abstractmethod
    def extract(self, image_bytes: bytes) -> ExtractionResult:
        """
        Raises:
            ExtractionError: no face, more than one face, or low image quality
        """


class OnnxEmbeddingExtractor(FaceEmbeddingExtractor):
    """
    YuNet face detection, LBF 68-point landmarks and an ONNX descriptor model.

    Models are loaded by load(); until it succeeds is_ready() is False.
    """

    def __init__(self, models_dir: str = "models", detection_threshold: float = 0.6):
        self.models_dir = models_dir
        self.detection_threshold = detection_threshold
        self._detector = None
        self._facemark = None
        self._session = None
        self._input_name = None

    def load(self) -> bool:
        try:
            logger.info("📦 Loading face models...")
            self._detector = cv2.FaceDetectorYN.create(
                model=os.path.join(self.models_dir, FACE_YUNET_MODEL),
                config="",
                input_size=(320, 320),
                score_threshold=self.detection_threshold,
                nms_threshold=0.3,
                top_k=5000,
            )
            self._facemark = cv2.face.createFacemarkLBF()
            self._facemark.loadModel(os.path.join(self.models_dir, LANDMARK_MODEL))
            self._session = ort.InferenceSession(
                os.path.join(self.models_dir, EMBEDDING_MODEL),
                providers=["CPUExecutionProvider"],
            )
            self._input_name = self._session.get_inputs()[0].name
            logger.info("✅ Face models loaded")
            return True
        except Exception as e:
            logger.error(f"❌ Failed to load face models: {e}")
            self._detector = self._facemark = self._session = self._input_name = None
            return False

    def is_ready(self) -> bool:
        return self._detector is not None and self._facemark is not None and self._session is not None

    def _detect(self, img: np.ndarray) -> np.ndarray:
        h, w = img.shape[:2]
        self._detector.setInputSize((w, h))
        _, faces = self._detector.detect(img)
        if faces is None or len(faces) == 0:
            raise ExtractionError("No face detected in the image", NO_FACE_SUGGESTIONS)
        if len(faces) > 1:
            raise ExtractionError(
                f"Multiple faces detected ({len(faces)}); cannot tell who is submitting",
                MULTIPLE_FACES_SUGGESTIONS,
            )
        return faces[0]

    def _landmarks(self, img: np.ndarray, box: Tuple[int, int, int, int]) -> Optional[List[Tuple[float, float]]]:
        gray = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
        ok, landmarks = self._facemark.fit(gray, np.array([box], dtype=np.int32))
        if not ok:
            logger.warning("Landmark fitting failed")
            return None
        return [(float(x), float(y)) for x, y in landmarks[0][0]]

    def _embedding(self, img: np.ndarray, box: Tuple[int, int, int, int]) -> List[float]:
        x, y, w, h = box
        padding = int(0.1 * w)
        x1, y1 = max(0, x - padding), max(0, y - padding)
        x2, y2 = min(img.shape[1], x + w + padding), min(img.shape[0], y + h + padding)
        face = cv2.cvtColor(img[y1:y2, x1:x2], cv2.COLOR_BGR2RGB)
        face = cv2.resize(face, EMBEDDING_INPUT_SIZE, interpolation=cv2.INTER_CUBIC)
        face = face.astype(np.float32) / 255.0
        tensor = np.expand_dims(np.transpose(face, (2, 0, 1)), axis=0)

        emb = self._session.run(None, {self._input_name: tensor})[0][0]
        norm = np.linalg.norm(emb)
        if norm > 0:
            emb = emb / norm
        return emb.astype(float).tolist()

    def extract(self, image_bytes: bytes) -> ExtractionResult:
        if not self.is_ready():
            raise ExtractionError("Face recognition service not ready", ["Try again in a few moments"])

        img = limit_image_size(decode_image(image_bytes))
        validate_image_quality(img)

        face = self._detect(img)
        box = tuple(int(v) for v in face[:4])
        confidence = float(face[14])

        landmarks = self._landmarks(img, box)
        vector = self._embedding(img, box)
        logger.info(f"✅ Face embedding extracted ({len(vector)}D vector, confidence: {confidence:.3f})")

        return ExtractionResult(
            vector=vector,
            confidence=confidence,
            landmarks=landmarks,
            bounding_box=BoundingBox(x=box[0], y=box[1], width=box[2], height=box[3]),
            image_width=img.shape[1],
            image_height=img.shape[0],
        )


def synthetic_landmarks(box: BoundingBox) -> List[Tuple[float, float]]:
    """68 points laid out on a frontal face inside box (eyes at 25% and 75% of width)."""
    points: List[Tuple[float, float]] = []
    for i in range(68):
        if 36 <= i < 42:
            cx = box.x + 0.25 * box.width
        elif 42 <= i < 48:
            cx = box.x + 0.75 * box.width
        else:
            cx = box.x + box.width * (i % 17) / 16.0
        cy = box.y + box.height * (0.35 if 36 <= i < 48 else (i // 17 + 1) / 5.0)
        points.append((cx, cy))
    return points


class DeterministicEmbeddingExtractor(FaceEmbeddingExtractor):
    """
    Stand-in for the embedding model.

    Scripted responses are keyed by the exact image bytes; unknown images get
    a synthetic frontal face whose vector is derived from a hash of the bytes,
    so the same image always yields the same embedding.
    """

    def __init__(self, dimensions: int = 128, ready: bool = True, synthesize_unknown: bool = True):
        self.dimensions = dimensions
        self.ready = ready
        self.synthesize_unknown = synthesize_unknown
        self._scripted: Dict[bytes, Union[ExtractionResult, ExtractionError]] = {}
        self.calls = 0

    def is_ready(self) -> bool:
        return self.ready

    def register(self, image_bytes: bytes, result: Union[ExtractionResult, ExtractionError]):
        self._scripted[image_bytes] = result

    def vector_for(self, image_bytes: bytes) -> List[float]:
        seed = int.from_bytes(hashlib.sha256(image_bytes).digest()[:8], "big")
        rng = np.random.default_rng(seed)
        vec = rng.normal(0, 1, self.dimensions)
        return (vec / np.linalg.norm(vec) * 0.5).tolist()

    def extract(self, image_bytes: bytes) -> ExtractionResult:
        self.calls += 1
        scripted = self._scripted.get(image_bytes)
        if isinstance(scripted, ExtractionError):
            raise scripted
        if scripted is not None:
            return scripted
        if not self.synthesize_unknown:
            raise ExtractionError("No face detected in the image", NO_FACE_SUGGESTIONS)

        box = BoundingBox(x=100, y=100, width=200, height=200)
        return ExtractionResult(
            vector=self.vector_for(image_bytes),
            confidence=0.95,
            landmarks=synthetic_landmarks(box),
            bounding_box=box,
            image_width=640,
            image_height=480,
        )


def build_extractor(settings: Settings) -> FaceEmbeddingExtractor:
    """Pick the extractor named by FACE_EXTRACTOR (onnx or stub)."""
    if settings.face_extractor == "onnx":
        extractor = OnnxEmbeddingExtractor(models_dir=settings.models_dir)
        extractor.load()
        logger.info("🧠 Using ONNX face embedding extractor")
        return extractor
    logger.info("🧠 Using deterministic face embedding extractor")
    return DeterministicEmbeddingExtractor()
