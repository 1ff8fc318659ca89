"""
Media Generation Pipeline

  Classification — Vision classifier → batch runner → room groups
  Generation     — Room job submitter → poller → composition engine
  Orchestration  — Per-project run state, progress, cancel and retry
"""

from .classification import ClassificationPipeline
from .classifier import VisionClassifier
from .composition import VideoComposer
from .orchestrator import GenerationOrchestrator
from .routes import classification_router, generation_router
from .models import GenerationStatus, RoomCategory

__all__ = [
    "ClassificationPipeline",
    "VisionClassifier",
    "VideoComposer",
    "GenerationOrchestrator",
    "classification_router",
    "generation_router",
    "GenerationStatus",
    "RoomCategory",
]
