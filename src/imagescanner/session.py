"""Classifier session: the per-browser state behind the UI.

A session holds the current image selection, the last prediction, whether an
analysis is in flight, and the notifications waiting to be shown. Every
analysis captures the selection it started with; if the user picks a new
image before it finishes, the stale result is dropped.
"""

from __future__ import annotations

import logging
import secrets
import uuid
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import StrEnum
from typing import TYPE_CHECKING

from imagescanner.errors import (
    AnalysisInProgress,
    DecodeFailure,
    ImageScannerError,
    InferenceFailure,
    InvalidInput,
    NoImageSelected,
)
from imagescanner.ml.acquisition import ModelStatus
from imagescanner.ml.preprocessing import MODEL_INPUT_SIZE, decode_image, resize_nearest

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from imagescanner.config import Settings
    from imagescanner.ml.acquisition import ClassifierProvider
    from imagescanner.ml.image_classifier import PredictionResult
    from imagescanner.ml.inference import InferencePool

logger = logging.getLogger(__name__)

INVALID_FILE_MESSAGE = "Please select a valid image file"
NO_IMAGE_MESSAGE = "Please select an image first"
DECODE_FAILED_MESSAGE = "Image could not be decoded"
ANALYSIS_FAILED_MESSAGE = "Error analyzing image. Please try again."


class SessionState(StrEnum):
    IDLE = "idle"
    ANALYZING = "analyzing"


class NotificationLevel(StrEnum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


@dataclass(frozen=True)
class Notification:
    message: str
    level: NotificationLevel
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass(frozen=True, eq=False)
class SelectedImage:
    """A decoded user upload. Only images that decoded successfully are selected.

    ``pixels`` is already resized to the model input size; ``width`` and
    ``height`` are the dimensions of the original image.
    """

    filename: str
    media_type: str
    data: bytes
    pixels: NDArray[np.uint8]
    width: int
    height: int
    image_id: str = field(default_factory=lambda: uuid.uuid4().hex)


async def classify_pixels(
    provider: ClassifierProvider,
    pool: InferencePool,
    pixels: NDArray[np.uint8],
) -> PredictionResult:
    """Run the active classifier on decoded pixels.

    Raises:
        ModelUnavailable: While the model is still loading.
        ServerBusy: If no inference slot is free in time.
        InferenceFailure: For any error inside preprocessing, prediction or label lookup.
    """
    classifier = provider.classifier
    try:
        return await pool.run(classifier.classify, pixels)
    except ImageScannerError:
        raise
    except Exception as exc:
        logger.exception("Error analyzing image with %s", classifier.model_name)
        raise InferenceFailure(ANALYSIS_FAILED_MESSAGE) from exc


async def decode_upload(
    pool: InferencePool,
    settings: Settings,
    media_type: str | None,
    data: bytes,
) -> NDArray[np.uint8]:
    """Validate an upload's media type and size, then decode it.

    Raises:
        InvalidInput: If the declared type is not an image or the file is too large.
        DecodeFailure: If the bytes are not a readable image.
    """
    if not media_type or not media_type.startswith("image/"):
        raise InvalidInput(INVALID_FILE_MESSAGE)
    if len(data) > settings.max_file_size:
        raise InvalidInput(f"Image exceeds the {settings.max_file_size} byte limit")
    if not data:
        raise DecodeFailure(DECODE_FAILED_MESSAGE)
    return await pool.run(decode_image, data, settings.max_image_pixels)


class ClassifierSession:
    """State machine for one user: Idle -> Analyzing -> Idle."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._selection: SelectedImage | None = None
        self._result: PredictionResult | None = None
        self._state = SessionState.IDLE
        self._notifications: list[Notification] = []
        self._model_warning_shown = False

    # -- Read-only view -----------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def analyzing(self) -> bool:
        return self._state is SessionState.ANALYZING

    @property
    def selection(self) -> SelectedImage | None:
        return self._selection

    @property
    def result(self) -> PredictionResult | None:
        return self._result

    @property
    def notifications(self) -> list[Notification]:
        return list(self._notifications)

    def can_analyze(self, provider: ClassifierProvider) -> bool:
        """Whether the analyze action should be enabled."""
        return self._selection is not None and not self.analyzing and provider.status is not ModelStatus.LOADING

    # -- Notifications ------------------------------------------------------

    def notify(self, message: str, level: NotificationLevel = NotificationLevel.ERROR) -> Notification:
        notification = Notification(message=message, level=level)
        self._notifications.append(notification)
        return notification

    def dismiss(self, notification_id: str) -> bool:
        """Remove a notification by id. Returns False if it was not present."""
        for index, notification in enumerate(self._notifications):
            if notification.id == notification_id:
                del self._notifications[index]
                return True
        return False

    def sync_model_status(self, provider: ClassifierProvider) -> None:
        """Surface the model-load warning once per session."""
        if provider.status is ModelStatus.DEGRADED and provider.warning and not self._model_warning_shown:
            self._model_warning_shown = True
            self.notify(provider.warning, NotificationLevel.WARNING)

    # -- Operations ---------------------------------------------------------

    async def select_image(
        self,
        pool: InferencePool,
        filename: str,
        media_type: str | None,
        data: bytes,
    ) -> SelectedImage:
        """Replace the current selection with a newly uploaded image.

        On any failure the previous selection and result stay as they were.
        """
        try:
            pixels = await decode_upload(pool, self._settings, media_type, data)
        except ImageScannerError as exc:
            logger.info("Rejected upload %r: %s", filename, exc.message)
            self.notify(exc.message)
            raise

        # Nearest resize from model size to model size is the identity.
        height, width = pixels.shape[:2]
        selection = SelectedImage(
            filename=filename,
            media_type=media_type or "",
            data=data,
            pixels=resize_nearest(pixels, MODEL_INPUT_SIZE, MODEL_INPUT_SIZE),
            width=width,
            height=height,
        )
        self._selection = selection
        self._result = None
        logger.debug("Selected %r (%dx%d)", filename, width, height)
        return selection

    async def analyze(self, provider: ClassifierProvider, pool: InferencePool) -> PredictionResult | None:
        """Classify the current selection.

        Returns the new result, or None if the selection changed while the
        analysis ran (the result no longer matches what the user sees).
        """
        if self._selection is None:
            self.notify(NO_IMAGE_MESSAGE, NotificationLevel.WARNING)
            raise NoImageSelected(NO_IMAGE_MESSAGE)
        if self.analyzing:
            raise AnalysisInProgress("An analysis is already running")

        snapshot = self._selection
        self._state = SessionState.ANALYZING
        try:
            result = await classify_pixels(provider, pool, snapshot.pixels)
        except ImageScannerError as exc:
            if self._selection is snapshot:
                self._result = None
            self.notify(exc.message)
            raise
        finally:
            self._state = SessionState.IDLE

        current = self._selection
        if current is None or current.image_id != snapshot.image_id:
            logger.info("Discarding result for superseded image %s", snapshot.image_id)
            return None

        self._result = result
        return result


class SessionStore:
    """In-memory sessions keyed by an opaque token, least recently used evicted first."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._sessions: OrderedDict[str, ClassifierSession] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, token: str | None) -> ClassifierSession | None:
        if token is None:
            return None
        session = self._sessions.get(token)
        if session is not None:
            self._sessions.move_to_end(token)
        return session

    def create(self) -> tuple[str, ClassifierSession]:
        token = secrets.token_urlsafe(32)
        session = ClassifierSession(self._settings)
        self._sessions[token] = session
        while len(self._sessions) > self._settings.max_sessions:
            evicted, _ = self._sessions.popitem(last=False)
            logger.debug("Evicted session %s...", evicted[:8])
        return token, session

    def get_or_create(self, token: str | None) -> tuple[str, ClassifierSession]:
        session = self.get(token)
        if token is not None and session is not None:
            return token, session
        return self.create()
