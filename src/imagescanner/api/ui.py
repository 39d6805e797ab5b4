"""Browser UI: the single page and the session endpoints it drives."""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from fastapi import APIRouter, HTTPException, Request, Response, UploadFile, status
from fastapi.responses import HTMLResponse

from imagescanner.api.middleware import SESSION_COOKIE, set_session_cookie
from imagescanner.api.schemas import (
    NotificationOut,
    Prediction,
    SelectedImageOut,
    SessionResponse,
)
from imagescanner.ml.acquisition import ModelStatus

if TYPE_CHECKING:
    from imagescanner.ml.acquisition import ClassifierProvider
    from imagescanner.ml.inference import InferencePool
    from imagescanner.session import ClassifierSession, SessionStore

router = APIRouter(tags=["ui"])

INDEX_HTML = Path(__file__).parent / "templates" / "index.html"


def _get_provider(request: Request) -> ClassifierProvider:
    provider: ClassifierProvider = request.app.state.classifier_provider
    return provider


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_session(request: Request, response: Response) -> ClassifierSession:
    store: SessionStore = request.app.state.session_store
    token = request.cookies.get(SESSION_COOKIE)
    new_token, session = store.get_or_create(token)
    if new_token != token:
        # Error responses are built elsewhere; they pick the token up from request.state.
        request.state.session_token = new_token
        set_session_cookie(response, new_token)
    session.sync_model_status(_get_provider(request))
    return session


def _render_session(session: ClassifierSession, provider: ClassifierProvider) -> SessionResponse:
    image = None
    if session.selection is not None:
        selection = session.selection
        image = SelectedImageOut(
            image_id=selection.image_id,
            filename=selection.filename,
            media_type=selection.media_type,
            width=selection.width,
            height=selection.height,
        )

    result = None
    if session.result is not None:
        result = Prediction(
            label=session.result.label,
            confidence=session.result.confidence,
            mode=provider.classifier.mode,
        )

    return SessionResponse(
        model_status=provider.status,
        model_loading=provider.status is ModelStatus.LOADING,
        demo_mode=provider.status is ModelStatus.DEGRADED,
        analyzing=session.analyzing,
        can_analyze=session.can_analyze(provider),
        image=image,
        result=result,
        notifications=[NotificationOut(id=n.id, level=n.level, message=n.message) for n in session.notifications],
    )


@router.get("/", response_class=HTMLResponse, include_in_schema=False)
async def ui_root() -> HTMLResponse:
    if not INDEX_HTML.exists():
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="UI template missing")
    return HTMLResponse(INDEX_HTML.read_text(encoding="utf-8"))


@router.get("/ui/session", response_model=SessionResponse)
async def get_session_state(request: Request, response: Response) -> SessionResponse:
    session = _get_session(request, response)
    return _render_session(session, _get_provider(request))


@router.post("/ui/session/image", response_model=SessionResponse)
async def select_image(request: Request, response: Response, file: UploadFile) -> SessionResponse:
    """Upload a new image; replaces the current selection and clears the result."""
    session = _get_session(request, response)
    data = await file.read()
    await session.select_image(_get_inference_pool(request), file.filename or "", file.content_type, data)
    return _render_session(session, _get_provider(request))


@router.get("/ui/session/image")
async def get_selected_image(request: Request, response: Response) -> Response:
    """Return the raw bytes of the current selection for the preview."""
    session = _get_session(request, response)
    selection = session.selection
    if selection is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No image selected")
    return Response(
        content=selection.data,
        media_type=selection.media_type,
        headers={"Cache-Control": "no-store"},
    )


@router.post("/ui/session/analyze", response_model=SessionResponse)
async def analyze(request: Request, response: Response) -> SessionResponse:
    """Classify the current selection with whichever classifier is active."""
    session = _get_session(request, response)
    provider = _get_provider(request)
    await session.analyze(provider, _get_inference_pool(request))
    return _render_session(session, provider)


@router.delete("/ui/session/notifications/{notification_id}", response_model=SessionResponse)
async def dismiss_notification(request: Request, response: Response, notification_id: str) -> SessionResponse:
    session = _get_session(request, response)
    if not session.dismiss(notification_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Notification not found")
    return _render_session(session, _get_provider(request))
