"""Error taxonomy shared by the session, the ML layer and the API."""

from __future__ import annotations

from fastapi import status


class ImageScannerError(Exception):
    """Base class for recoverable, user-visible errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidInput(ImageScannerError):
    """The selected file is not an acceptable image, or nothing is selected."""

    status_code = status.HTTP_415_UNSUPPORTED_MEDIA_TYPE


class NoImageSelected(InvalidInput):
    """Analysis was requested before any image was selected."""

    status_code = status.HTTP_400_BAD_REQUEST


class DecodeFailure(ImageScannerError):
    """Image bytes could not be decoded into pixels."""

    # Literal: Starlette renamed the 422 constant (UNPROCESSABLE_ENTITY -> _CONTENT).
    status_code = 422


class InferenceFailure(ImageScannerError):
    """Preprocessing, prediction or label lookup failed."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


class ModelUnavailable(ImageScannerError):
    """No classifier can serve the request (model still loading or failed to load)."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE


class AnalysisInProgress(ImageScannerError):
    """The session already has an analysis in flight."""

    status_code = status.HTTP_409_CONFLICT


class ServerBusy(ImageScannerError):
    """No inference slot became free within the queue timeout."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
