"""Backend selection for the listing classifier."""

from __future__ import annotations

from src.classifier import ListingClassifier
from src.config import ClassifierBackend, Settings


def build_classifier(config: Settings) -> ListingClassifier:
    """Instantiate the backend named by CLASSIFIER_BACKEND."""
    if config.CLASSIFIER_BACKEND is ClassifierBackend.CLAUDE:
        from src.classifier.claude import ClaudeVisionClassifier
        return ClaudeVisionClassifier(api_key=config.ANTHROPIC_API_KEY, model=config.VISION_MODEL_ID)

    from src.classifier.lmstudio import LMStudioClassifier
    return LMStudioClassifier(base_url=config.LMSTUDIO_BASE_URL, model=config.LMSTUDIO_MODEL)
