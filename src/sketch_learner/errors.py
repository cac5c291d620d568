from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from fastapi import status


class ErrorCode(str, Enum):
    source_not_ready = "source_not_ready"
    unknown_label = "unknown_label"
    invalid_label = "invalid_label"
    last_label = "last_label"
    insufficient_data = "insufficient_data"
    training_failed = "training_failed"
    training_in_progress = "training_in_progress"
    model_not_ready = "model_not_ready"
    save_failed = "save_failed"
    load_absent = "load_absent"
    preprocessing_failed = "preprocessing_failed"
    invalid_image = "invalid_image"
    unsupported_media_type = "unsupported_media_type"
    bad_dimensions = "bad_dimensions"
    too_large = "too_large"
    malformed_multipart = "malformed_multipart"
    timeout = "timeout"
    unauthorized = "unauthorized"
    internal_error = "internal_error"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.source_not_ready: "No drawing available.",
    ErrorCode.unknown_label: "Label not found.",
    ErrorCode.invalid_label: "Label must be a new, non-empty name.",
    ErrorCode.last_label: "Cannot remove the last label.",
    ErrorCode.insufficient_data: "Need at least 1 example per class.",
    ErrorCode.training_failed: "Training failed.",
    ErrorCode.training_in_progress: "A training run is already in progress.",
    ErrorCode.model_not_ready: "Train (or load) a model first",
    ErrorCode.save_failed: "Save failed.",
    ErrorCode.load_absent: "No saved model found",
    ErrorCode.preprocessing_failed: "Image preprocessing failed.",
    ErrorCode.invalid_image: "Failed to decode image.",
    ErrorCode.unsupported_media_type: "Unsupported media type.",
    ErrorCode.bad_dimensions: "Image dimensions exceed allowed limits.",
    ErrorCode.too_large: "File exceeds size limit.",
    ErrorCode.malformed_multipart: "Malformed multipart body.",
    ErrorCode.timeout: "Request timed out.",
    ErrorCode.unauthorized: "Unauthorized.",
    ErrorCode.internal_error: "Internal server error.",
}


@dataclass(frozen=True)
class ErrorResponse:
    code: ErrorCode
    message: str
    request_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "code": self.code.value,
            "message": self.message,
            "request_id": self.request_id,
        }


class AppError(Exception):
    def __init__(self, code: ErrorCode, http_status: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status
        self.message = message


def app_error(code: ErrorCode, message: str | None = None) -> AppError:
    """Build an AppError with the status mapped from its code."""
    msg = message if message is not None else default_message(code)
    return AppError(code, status_for(code), msg)


def default_message(code: ErrorCode) -> str:
    return _DEFAULT_MESSAGE.get(code, "")


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    msg = message if message is not None else default_message(code)
    return ErrorResponse(code=code, message=msg, request_id=request_id)


def status_for(code: ErrorCode) -> int:
    if code in (
        ErrorCode.source_not_ready,
        ErrorCode.invalid_label,
        ErrorCode.preprocessing_failed,
        ErrorCode.invalid_image,
        ErrorCode.bad_dimensions,
        ErrorCode.malformed_multipart,
    ):
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.unknown_label or code is ErrorCode.load_absent:
        return status.HTTP_404_NOT_FOUND
    if code in (
        ErrorCode.last_label,
        ErrorCode.training_in_progress,
        ErrorCode.insufficient_data,
    ):
        return status.HTTP_409_CONFLICT
    if code is ErrorCode.model_not_ready:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if code is ErrorCode.unsupported_media_type:
        return status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    if code is ErrorCode.too_large:
        return status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    if code is ErrorCode.timeout:
        return status.HTTP_504_GATEWAY_TIMEOUT
    if code is ErrorCode.unauthorized:
        return status.HTTP_401_UNAUTHORIZED
    return status.HTTP_500_INTERNAL_SERVER_ERROR
