"""Tests for the classifier session state machine."""

from __future__ import annotations

import asyncio
import io
from typing import TYPE_CHECKING, TypeVar
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from imagescanner.config import Settings
from imagescanner.errors import (
    AnalysisInProgress,
    DecodeFailure,
    InferenceFailure,
    InvalidInput,
    ModelUnavailable,
)
from imagescanner.ml.acquisition import ModelStatus
from imagescanner.ml.image_classifier import PredictionResult
from imagescanner.ml.preprocessing import decode_image, preprocess_for_classification
from imagescanner.session import (
    ANALYSIS_FAILED_MESSAGE,
    DECODE_FAILED_MESSAGE,
    INVALID_FILE_MESSAGE,
    NO_IMAGE_MESSAGE,
    ClassifierSession,
    NotificationLevel,
    SessionState,
    SessionStore,
)

if TYPE_CHECKING:
    from collections.abc import Callable

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class _StubPool:
    """Runs work inline; classification can be held open with ``gate``."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        name = getattr(func, "__name__", repr(func))
        self.calls.append(name)
        if name == "classify":
            self.entered.set()
            if self.gate is not None:
                await self.gate.wait()
        return func(*args)


def _png(color: tuple[int, int, int] = (255, 0, 0), size: tuple[int, int] = (8, 6)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", size, color).save(buf, format="PNG")
    return buf.getvalue()


def _broken_png() -> bytes:
    """512x512 noise PNG whose second IDAT chunk has an invalid chunk type."""
    noise = np.random.default_rng(0).integers(0, 256, size=(512, 512, 3), dtype=np.uint8)
    buf = io.BytesIO()
    Image.fromarray(noise).save(buf, format="PNG")
    data = buf.getvalue()
    first = data.index(b"IDAT")
    second = data.index(b"IDAT", first + 4)
    return data[:second] + b"\x00\x01\x02\x03" + data[second + 4 :]


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {"demo_mode": False, "max_file_size": 1_000_000}
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


class _StubProvider:
    """Stands in for ClassifierProvider with a fixed status and classifier."""

    def __init__(self, classifier: MagicMock, status: ModelStatus) -> None:
        self._classifier = classifier
        self.status = status
        self.warning: str | None = None

    @property
    def classifier(self) -> MagicMock:
        if self.status is ModelStatus.LOADING:
            raise ModelUnavailable("Model is still loading, please wait")
        return self._classifier


def _make_provider(
    result: PredictionResult | None = None,
    error: Exception | None = None,
    status: ModelStatus = ModelStatus.READY,
) -> _StubProvider:
    classifier = MagicMock()
    classifier.model_name = "stub"
    classifier.classify.__name__ = "classify"
    if error is not None:
        classifier.classify.side_effect = error
    else:
        classifier.classify.return_value = result or PredictionResult(label="dog", confidence="70.00")
    return _StubProvider(classifier, status)


@pytest.fixture()
def pool() -> _StubPool:
    return _StubPool()


@pytest.fixture()
def session() -> ClassifierSession:
    return ClassifierSession(_make_settings())


# ---------------------------------------------------------------------------
# Image intake
# ---------------------------------------------------------------------------


class TestSelectImage:
    async def test_valid_image_becomes_selection(self, session: ClassifierSession, pool: _StubPool) -> None:
        selection = await session.select_image(pool, "cat.png", "image/png", _png())

        assert session.selection is selection
        assert selection.filename == "cat.png"
        assert (selection.width, selection.height) == (8, 6)
        assert selection.pixels.shape == (224, 224, 3)
        assert session.notifications == []

    async def test_non_image_type_is_rejected_without_state_change(
        self, session: ClassifierSession, pool: _StubPool
    ) -> None:
        first = await session.select_image(pool, "cat.png", "image/png", _png())

        with pytest.raises(InvalidInput):
            await session.select_image(pool, "notes.txt", "text/plain", b"hello")

        assert session.selection is first
        assert [n.message for n in session.notifications] == [INVALID_FILE_MESSAGE]
        assert pool.calls == ["decode_image"]

    async def test_missing_content_type_is_rejected(self, session: ClassifierSession, pool: _StubPool) -> None:
        with pytest.raises(InvalidInput):
            await session.select_image(pool, "mystery", None, _png())
        assert session.selection is None

    async def test_oversized_file_is_rejected(self, pool: _StubPool) -> None:
        session = ClassifierSession(_make_settings(max_file_size=10))
        with pytest.raises(InvalidInput, match="byte limit"):
            await session.select_image(pool, "big.png", "image/png", _png())
        assert session.selection is None

    async def test_decode_failure_keeps_prior_selection_and_result(
        self, session: ClassifierSession, pool: _StubPool
    ) -> None:
        first = await session.select_image(pool, "cat.png", "image/png", _png())
        await session.analyze(_make_provider(), pool)

        with pytest.raises(DecodeFailure):
            await session.select_image(pool, "broken.jpg", "image/jpeg", b"\xff\xd8 not really")

        assert session.selection is first
        assert session.result == PredictionResult(label="dog", confidence="70.00")
        assert session.notifications[-1].level == NotificationLevel.ERROR

    async def test_corrupt_png_chunk_is_a_decode_failure(self, session: ClassifierSession, pool: _StubPool) -> None:
        with pytest.raises(DecodeFailure):
            await session.select_image(pool, "noise.png", "image/png", _broken_png())

        assert session.selection is None
        assert [n.message for n in session.notifications] == [DECODE_FAILED_MESSAGE]

    async def test_decode_failure_notifies_specific_reason(self, pool: _StubPool) -> None:
        session = ClassifierSession(_make_settings(max_image_pixels=10))

        with pytest.raises(DecodeFailure, match="too large"):
            await session.select_image(pool, "cat.png", "image/png", _png())

        assert session.notifications[-1].message == "Image is too large (8x6 pixels)"

    async def test_selection_keeps_model_sized_pixels_only(self, session: ClassifierSession, pool: _StubPool) -> None:
        big = _png(size=(640, 480))
        selection = await session.select_image(pool, "big.png", "image/png", big)

        assert selection.pixels.shape == (224, 224, 3)
        assert (selection.width, selection.height) == (640, 480)
        full = decode_image(big)
        assert np.array_equal(
            preprocess_for_classification(selection.pixels),
            preprocess_for_classification(full),
        )

    async def test_new_selection_clears_result(self, session: ClassifierSession, pool: _StubPool) -> None:
        await session.select_image(pool, "cat.png", "image/png", _png())
        await session.analyze(_make_provider(), pool)
        assert session.result is not None

        await session.select_image(pool, "dog.png", "image/png", _png((0, 0, 255)))

        assert session.result is None
        assert session.selection is not None
        assert session.selection.filename == "dog.png"


# ---------------------------------------------------------------------------
# Analyze orchestration
# ---------------------------------------------------------------------------


class TestAnalyze:
    async def test_without_selection_is_a_noop(self, session: ClassifierSession, pool: _StubPool) -> None:
        provider = _make_provider()

        with pytest.raises(InvalidInput):
            await session.analyze(provider, pool)

        assert pool.calls == []
        provider.classifier.classify.assert_not_called()
        assert [n.message for n in session.notifications] == [NO_IMAGE_MESSAGE]
        assert session.state == SessionState.IDLE

    async def test_success_stores_result(self, session: ClassifierSession, pool: _StubPool) -> None:
        await session.select_image(pool, "cat.png", "image/png", _png())
        provider = _make_provider(PredictionResult(label="tabby", confidence="91.25"))

        result = await session.analyze(provider, pool)

        assert result == PredictionResult(label="tabby", confidence="91.25")
        assert session.result == result
        provider.classifier.classify.assert_called_once()
        assert session.state == SessionState.IDLE

    async def test_analyzing_flag_only_during_call(self, session: ClassifierSession, pool: _StubPool) -> None:
        await session.select_image(pool, "cat.png", "image/png", _png())
        provider = _make_provider()
        pool.gate = asyncio.Event()

        task = asyncio.create_task(session.analyze(provider, pool))
        await pool.entered.wait()
        assert session.analyzing
        assert not session.can_analyze(provider)

        pool.gate.set()
        await task
        assert not session.analyzing
        assert session.can_analyze(provider)

    async def test_second_analysis_while_running_is_refused(
        self, session: ClassifierSession, pool: _StubPool
    ) -> None:
        await session.select_image(pool, "cat.png", "image/png", _png())
        provider = _make_provider()
        pool.gate = asyncio.Event()

        task = asyncio.create_task(session.analyze(provider, pool))
        await pool.entered.wait()
        with pytest.raises(AnalysisInProgress):
            await session.analyze(provider, pool)

        pool.gate.set()
        await task
        provider.classifier.classify.assert_called_once()

    async def test_failure_notifies_and_returns_to_idle(self, session: ClassifierSession, pool: _StubPool) -> None:
        await session.select_image(pool, "cat.png", "image/png", _png())
        provider = _make_provider(error=RuntimeError("onnx exploded"))

        with pytest.raises(InferenceFailure):
            await session.analyze(provider, pool)

        assert session.state == SessionState.IDLE
        assert session.result is None
        assert session.notifications[-1].message == ANALYSIS_FAILED_MESSAGE

    async def test_failure_after_prior_success_clears_result(
        self, session: ClassifierSession, pool: _StubPool
    ) -> None:
        await session.select_image(pool, "cat.png", "image/png", _png())
        await session.analyze(_make_provider(), pool)

        with pytest.raises(InferenceFailure):
            await session.analyze(_make_provider(error=ValueError("bad tensor")), pool)

        assert not session.analyzing
        assert session.result is None

    async def test_model_still_loading(self, session: ClassifierSession, pool: _StubPool) -> None:
        await session.select_image(pool, "cat.png", "image/png", _png())
        provider = _make_provider(status=ModelStatus.LOADING)

        assert not session.can_analyze(provider)
        with pytest.raises(ModelUnavailable):
            await session.analyze(provider, pool)
        assert session.state == SessionState.IDLE
        assert "classify" not in pool.calls

    async def test_superseded_selection_discards_result(self, session: ClassifierSession, pool: _StubPool) -> None:
        await session.select_image(pool, "cat.png", "image/png", _png())
        provider = _make_provider()
        pool.gate = asyncio.Event()

        task = asyncio.create_task(session.analyze(provider, pool))
        await pool.entered.wait()
        newer = await session.select_image(pool, "dog.png", "image/png", _png((0, 255, 0)))
        pool.gate.set()

        assert await task is None
        assert session.selection is newer
        assert session.result is None

    async def test_analysis_uses_snapshot_pixels(self, session: ClassifierSession, pool: _StubPool) -> None:
        first = await session.select_image(pool, "cat.png", "image/png", _png())
        provider = _make_provider()

        await session.analyze(provider, pool)

        (pixels,) = provider.classifier.classify.call_args.args
        assert np.array_equal(pixels, first.pixels)


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class TestNotifications:
    def test_dismiss(self, session: ClassifierSession) -> None:
        note = session.notify("hello", NotificationLevel.INFO)
        assert session.dismiss(note.id)
        assert session.notifications == []
        assert not session.dismiss(note.id)

    def test_model_warning_shown_once(self, session: ClassifierSession) -> None:
        provider = _make_provider(status=ModelStatus.DEGRADED)
        provider.warning = "Model loading failed. Using demo mode."

        session.sync_model_status(provider)
        session.sync_model_status(provider)

        assert len(session.notifications) == 1
        assert session.notifications[0].level == NotificationLevel.WARNING

    def test_no_warning_when_ready(self, session: ClassifierSession) -> None:
        session.sync_model_status(_make_provider())
        assert session.notifications == []


# ---------------------------------------------------------------------------
# SessionStore
# ---------------------------------------------------------------------------


class TestSessionStore:
    def test_get_or_create_reuses_token(self) -> None:
        store = SessionStore(_make_settings())
        token, session = store.get_or_create(None)

        same_token, same_session = store.get_or_create(token)

        assert same_token == token
        assert same_session is session

    def test_unknown_token_gets_new_session(self) -> None:
        store = SessionStore(_make_settings())
        token, _ = store.get_or_create("forged")
        assert token != "forged"
        assert len(store) == 1

    def test_evicts_least_recently_used(self) -> None:
        store = SessionStore(_make_settings(max_sessions=2))
        first, _ = store.create()
        second, _ = store.create()
        store.get(first)
        store.create()

        assert store.get(second) is None
        assert store.get(first) is not None
        assert len(store) == 2
