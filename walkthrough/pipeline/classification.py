"""
Classification Pipeline.

Turns a set of uploaded photographs into a categorized image set:

  uploading → analyzing → categorizing → complete   (error is terminal)

Progress is reported as one 0–100 scalar by remapping each phase into its
own sub-range (upload 0–50, analysis 50–95, categorizing 95, complete 100).
Individual image failures are recorded on the image; siblings continue.
"""

import os
import time
import asyncio
import logging
from typing import Callable, Optional

from walkthrough.config import PipelineSettings
from .batch import run_batch, BatchItemResult
from .categories import build_room_groups, calculate_stats, categorize_images
from .classifier import VisionClassifier
from .errors import ClassificationError, ImageProcessingError, PipelineError
from .models import (
    ImageRecord,
    ImageStatus,
    ProcessingPhase,
    ProcessingProgress,
    ProcessingResult,
)
from .storage import StorageBackend, image_key, with_storage_retry

logger = logging.getLogger(__name__)

ALLOWED_IMAGE_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}
MAX_IMAGE_BYTES = 10 * 1024 * 1024

ProgressCallback = Callable[[ProcessingProgress], None]


def validate_image_upload(filename: str, content_type: str, size: int) -> list[str]:
    """
    Check one candidate upload. Returns a list of problems (empty when valid).
    """
    errors = []
    label = filename or "<unnamed>"
    if not filename or not filename.strip():
        errors.append("File name is required")
    if content_type not in ALLOWED_IMAGE_TYPES:
        errors.append(f"{label}: Invalid file type. Only JPEG, PNG, and WebP are allowed.")
    if size > MAX_IMAGE_BYTES:
        errors.append(f"{label}: File too large. Maximum size is 10MB.")
    if size <= 0:
        errors.append(f"{label}: File is empty")
    return errors


class ClassificationPipeline:
    """
    Usage:
        pipeline = ClassificationPipeline(classifier, storage, repository)
        result = await pipeline.process_images(images, user_id, project_id, on_progress=cb)
    """

    def __init__(
        self,
        classifier: VisionClassifier,
        storage: StorageBackend,
        repository=None,
        settings: Optional[PipelineSettings] = None,
    ):
        self.classifier = classifier
        self.storage = storage
        self.repository = repository
        self.settings = settings or PipelineSettings()

    async def process_images(
        self,
        images: list[ImageRecord],
        user_id: str,
        project_id: str,
        on_progress: Optional[ProgressCallback] = None,
        skip_analysis: bool = False,
    ) -> ProcessingResult:
        started = time.monotonic()
        images = [img.model_copy(deep=True) for img in images]
        phase = ProcessingPhase.UPLOADING

        def _emit(phase: ProcessingPhase, completed: int, total: int,
                  overall: float, current: Optional[ImageRecord] = None):
            if on_progress:
                on_progress(ProcessingProgress(
                    phase=phase, completed=completed, total=total,
                    overall_progress=round(overall, 2), current_image=current,
                ))

        try:
            # ── Phase 1: upload ──────────────────────────────────────────
            pending_upload = [img for img in images if not img.upload_url]
            if pending_upload:
                upload_span = 100 if skip_analysis else 50
                _emit(phase, 0, len(pending_upload), 0)

                def _upload_progress(completed: int, total: int, item: BatchItemResult):
                    _emit(ProcessingPhase.UPLOADING, completed, total,
                          completed / total * upload_span, item.item)

                await run_batch(
                    pending_upload,
                    lambda img: self._upload_one(img, user_id, project_id),
                    concurrency=self.settings.classify_concurrency,
                    on_progress=_upload_progress,
                )
            else:
                logger.info(f"Project {project_id}: all {len(images)} images already uploaded")

            if skip_analysis:
                phase = ProcessingPhase.COMPLETE
                _emit(phase, len(images), len(images), 100)
                return self._result(images, started)

            # ── Phase 2: analyze ─────────────────────────────────────────
            phase = ProcessingPhase.ANALYZING
            uploaded = [
                img for img in images
                if img.upload_url and img.status != ImageStatus.ERROR
            ]
            if not uploaded:
                raise ImageProcessingError("No images were successfully uploaded", phase.value)

            for img in uploaded:
                img.status = ImageStatus.ANALYZING
            _emit(phase, 0, len(uploaded), 50)

            def _analysis_progress(completed: int, total: int, item: BatchItemResult):
                _emit(ProcessingPhase.ANALYZING, completed, total,
                      50 + completed / total * 45, item.item)

            await run_batch(
                uploaded,
                self._analyze_one,
                concurrency=self.settings.classify_concurrency,
                on_progress=_analysis_progress,
            )

            # ── Phase 3: categorize ──────────────────────────────────────
            phase = ProcessingPhase.CATEGORIZING
            _emit(phase, len(images), len(images), 95)
            result = self._result(images, started)

            phase = ProcessingPhase.COMPLETE
            _emit(phase, len(images), len(images), 100)
            logger.info(
                f"Project {project_id}: classified {result.stats.analyzed}/{result.stats.total} images "
                f"into {len(result.groups)} groups ({result.stats.failed} failed)"
            )
            return result

        except ImageProcessingError:
            _emit(ProcessingPhase.ERROR, 0, len(images), 0)
            raise
        except Exception as e:
            logger.error(f"Project {project_id}: image processing failed during {phase.value}: {e}")
            _emit(ProcessingPhase.ERROR, 0, len(images), 0)
            raise ImageProcessingError(f"Image processing failed: {e}", phase.value, e)

    async def _upload_one(self, image: ImageRecord, user_id: str, project_id: str) -> ImageRecord:
        image.status = ImageStatus.UPLOADING
        try:
            if not image.source_path:
                raise ImageProcessingError(f"No source file for image {image.id}", "uploading")

            data = await asyncio.to_thread(_read_file, image.source_path)
            key = image_key(user_id, project_id, image.filename or os.path.basename(image.source_path))
            image.upload_url = await with_storage_retry(
                lambda: self.storage.upload(key, data, image.content_type),
                max_attempts=self.settings.storage_max_attempts,
                base_delay=self.settings.storage_base_delay,
                max_delay=self.settings.storage_max_delay,
                label=f"upload {image.filename}",
            )
            image.status = ImageStatus.UPLOADED
            if self.repository is not None:
                await self.repository.save_image(project_id, image)
            return image
        except PipelineError as e:
            image.status = ImageStatus.ERROR
            image.error = e.message
            raise
        except OSError as e:
            image.status = ImageStatus.ERROR
            image.error = f"Could not read {image.source_path}: {e}"
            raise

    async def _analyze_one(self, image: ImageRecord) -> ImageRecord:
        try:
            image.classification = await self.classifier.classify(image.upload_url)
            image.status = ImageStatus.ANALYZED
            image.error = None
        except ClassificationError as e:
            image.status = ImageStatus.ERROR
            image.error = e.message
            raise

        if self.repository is not None:
            await self.repository.save_image_classification(image.id, image.classification)
        return image

    def _result(self, images: list[ImageRecord], started: float) -> ProcessingResult:
        return ProcessingResult(
            images=images,
            stats=calculate_stats(images, (time.monotonic() - started) * 1000),
            categorized=categorize_images(images),
            groups=build_room_groups(images),
        )


def _read_file(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()
