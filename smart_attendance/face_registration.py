"""
Face Registration
Turns a batch of face photos into the enrolled embeddings that attendance
matching compares against. Every photo has to clear the stricter registration
liveness threshold; photos that don't are reported and skipped.
"""

import asyncio
import logging
from concurrent.futures import Executor
from typing import Any, Dict, List, Optional

from .config import Settings
from .database import AttendanceStore
from .exceptions import ExtractionError, ExtractorNotReady, RegistrationError, UserNotFound
from .face_model import FaceEmbeddingExtractor
from .liveness_detection import LivenessAssessor
from .models import ExtractionResult, FaceEmbedding, RegistrationResult

logger = logging.getLogger(__name__)

RETRY_SUGGESTIONS = [
    "Try again with a different image",
    "Ensure good lighting and clear face visibility",
]


class FaceRegistrar:
    def __init__(
        self,
        extractor: FaceEmbeddingExtractor,
        store: AttendanceStore,
        settings: Optional[Settings] = None,
        executor: Optional[Executor] = None,
    ):
        self.settings = settings or Settings()
        self.extractor = extractor
        self.store = store
        self.executor = executor
        self.liveness = LivenessAssessor(threshold=self.settings.registration_liveness_threshold)

    async def _extract_all(self, images: List[bytes]) -> List[Any]:
        loop = asyncio.get_running_loop()
        tasks = [
            asyncio.wait_for(
                loop.run_in_executor(self.executor, self.extractor.extract, image),
                timeout=self.settings.extraction_timeout_seconds,
            )
            for image in images
        ]
        return await asyncio.gather(*tasks, return_exceptions=True)

    def _extraction_failure(self, index: int, result: BaseException) -> Dict[str, Any]:
        if isinstance(result, ExtractionError):
            return {"image_index": index, "reason": result.message, "suggestions": result.suggestions or RETRY_SUGGESTIONS}
        if isinstance(result, asyncio.TimeoutError):
            return {"image_index": index, "reason": "Face extraction timed out", "suggestions": RETRY_SUGGESTIONS}
        # model or runtime failures are not the user's image
        raise result

    async def register(self, user_id: str, images: List[bytes]) -> RegistrationResult:
        """
        Extract, liveness-check and store embeddings for a user's face photos.

        Args:
            user_id: User the embeddings belong to
            images: Decoded image bytes, between min_enrolled_embeddings and max_face_images

        Returns:
            RegistrationResult with per-image details and skipped images

        Raises:
            RegistrationError: image count out of range or too few valid images; also when already registered
            ExtractorNotReady: face model not loaded
            UserNotFound: the store has no such user
        """
        required = self.settings.min_enrolled_embeddings
        logger.info(f"📸 Processing {len(images)} face images for user {user_id}")

        if len(images) < required:
            raise RegistrationError(f"At least {required} face images are required")
        if len(images) > self.settings.max_face_images:
            raise RegistrationError(f"Maximum {self.settings.max_face_images} face images allowed")
        if not self.extractor.is_ready():
            raise ExtractorNotReady()
        if await self.store.get_user_embeddings(user_id):
            raise RegistrationError(
                "Face images already registered",
                suggestions=["Ask an administrator to reset your face registration"],
            )

        results = await self._extract_all(images)

        embeddings: List[FaceEmbedding] = []
        processed: List[Dict[str, Any]] = []
        validation_errors: List[Dict[str, Any]] = []
        for index, result in enumerate(results, start=1):
            if isinstance(result, BaseException):
                rejection = self._extraction_failure(index, result)
            else:
                extraction: ExtractionResult = result
                liveness = self.liveness.assess_extraction(extraction)
                if liveness.is_live:
                    embeddings.append(FaceEmbedding(vector=extraction.vector))
                    processed.append({
                        "index": index,
                        "confidence": extraction.confidence,
                        "liveness_score": liveness.score,
                    })
                    continue
                rejection = {
                    "image_index": index,
                    "reason": (
                        f"Liveness check failed: score {liveness.score * 100:.1f}% "
                        f"(minimum: {self.liveness.threshold * 100:.0f}%)"
                    ),
                    "suggestions": [self.liveness.get_guidance_message(liveness)],
                }
            logger.warning(f"❌ Image {index} rejected: {rejection['reason']}")
            validation_errors.append(rejection)

        logger.info(f"📊 Valid images: {len(embeddings)}/{len(images)}")
        if len(embeddings) < required:
            raise RegistrationError(
                f"Not enough valid face images. At least {required} valid images required.",
                validation_errors=validation_errors,
                suggestions=RETRY_SUGGESTIONS,
            )

        if not await self.store.add_user_embeddings(user_id, embeddings):
            raise UserNotFound("User not found")

        logger.info(f"✅ Face registration completed for user {user_id}")
        return RegistrationResult(
            user_id=user_id,
            registered=len(embeddings),
            submitted=len(images),
            processed_images=processed,
            validation_errors=validation_errors,
        )
