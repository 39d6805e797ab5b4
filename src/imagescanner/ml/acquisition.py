"""One-shot model acquisition.

The provider starts in ``loading``, tries once to build the real classifier,
and ends in ``ready`` or ``degraded``. Both end states serve requests: ``ready``
with the ONNX model, ``degraded`` with the demo fallback.
"""

from __future__ import annotations

import asyncio
import logging
import random
from enum import StrEnum
from typing import TYPE_CHECKING

from imagescanner.errors import ModelUnavailable
from imagescanner.ml.image_classifier import FallbackClassifier, ImageClassifier, OnnxImageClassifier
from imagescanner.ml.model_manager import get_model_spec

if TYPE_CHECKING:
    from imagescanner.config import Settings
    from imagescanner.ml.labels import LabelTable
    from imagescanner.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

MODEL_LOAD_WARNING = "Model loading failed. Using demo mode."


class ModelStatus(StrEnum):
    LOADING = "loading"
    READY = "ready"
    DEGRADED = "degraded"


class ClassifierProvider:
    """Holds whichever classifier the one acquisition attempt produced."""

    def __init__(
        self,
        settings: Settings,
        model_manager: ModelManager,
        labels: LabelTable,
        rng: random.Random | None = None,
    ) -> None:
        self._settings = settings
        self._model_manager = model_manager
        self._labels = labels
        self._rng = rng
        self._status = ModelStatus.LOADING
        self._classifier: ImageClassifier | None = None
        self._started = False
        self.warning: str | None = None

    @property
    def status(self) -> ModelStatus:
        return self._status

    @property
    def classifier(self) -> ImageClassifier:
        """Return the active classifier.

        Raises:
            ModelUnavailable: While acquisition has not finished.
        """
        if self._classifier is None:
            raise ModelUnavailable("Model is still loading, please wait")
        return self._classifier

    async def acquire(self) -> None:
        """Load the configured model. Runs at most once; never retries."""
        if self._started:
            logger.debug("Model acquisition already attempted, ignoring")
            return
        self._started = True

        if self._settings.demo_mode:
            logger.info("Demo mode enabled, skipping model acquisition")
            self._degrade("Demo mode is enabled.")
            return

        model_name = self._settings.model_name
        logger.info("Acquiring model %s", model_name)
        try:
            spec = get_model_spec(model_name)
            session = await asyncio.to_thread(self._model_manager.get_session, model_name)
            classifier = OnnxImageClassifier(session, spec, self._labels)
        except Exception:
            # Any acquisition failure (network, missing file, malformed model) degrades.
            logger.warning("Model %s could not be loaded, falling back to demo mode", model_name, exc_info=True)
            self._degrade(MODEL_LOAD_WARNING)
            return

        self._classifier = classifier
        self._status = ModelStatus.READY
        logger.info("Model %s ready", model_name)

    def _degrade(self, warning: str) -> None:
        self._classifier = FallbackClassifier(self._settings.fallback_labels, rng=self._rng)
        self._status = ModelStatus.DEGRADED
        self.warning = warning
