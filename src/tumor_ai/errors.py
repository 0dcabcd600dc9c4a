from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from fastapi import status


class ErrorCode(str, Enum):
    decode_error = "decode_error"
    engine_unavailable = "engine_unavailable"
    empty_output = "empty_output"
    unsupported_media_type = "unsupported_media_type"
    bad_dimensions = "bad_dimensions"
    too_large = "too_large"
    timeout = "timeout"
    internal_error = "internal_error"
    unauthorized = "unauthorized"
    malformed_multipart = "malformed_multipart"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.decode_error: "Failed to decode image.",
    ErrorCode.engine_unavailable: "Model not loaded.",
    ErrorCode.empty_output: "Model returned a malformed output.",
    ErrorCode.unsupported_media_type: "Unsupported media type.",
    ErrorCode.bad_dimensions: "Image dimensions exceed allowed limits.",
    ErrorCode.too_large: "File exceeds size limit.",
    ErrorCode.timeout: "Request timed out.",
    ErrorCode.internal_error: "Internal server error.",
    ErrorCode.unauthorized: "Unauthorized.",
    ErrorCode.malformed_multipart: "Malformed multipart body.",
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


class DecodeError(AppError):
    """Image bytes could not be decoded or converted to RGB."""

    def __init__(self, message: str | None = None) -> None:
        code = ErrorCode.decode_error
        super().__init__(code, status_for(code), message or _DEFAULT_MESSAGE[code])


class ImageTooLarge(AppError):
    def __init__(self, message: str | None = None) -> None:
        code = ErrorCode.too_large
        super().__init__(code, status_for(code), message or _DEFAULT_MESSAGE[code])


class EngineUnavailable(AppError):
    """Model file is missing, failed to load, or the engine was closed."""

    def __init__(self, message: str | None = None) -> None:
        code = ErrorCode.engine_unavailable
        super().__init__(code, status_for(code), message or _DEFAULT_MESSAGE[code])


class EmptyOutput(AppError):
    """Inference produced an output that does not have one score per label."""

    def __init__(self, message: str | None = None) -> None:
        code = ErrorCode.empty_output
        super().__init__(code, status_for(code), message or _DEFAULT_MESSAGE[code])


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    msg = message if message is not None else _DEFAULT_MESSAGE.get(code, "")
    return ErrorResponse(code=code, message=msg, request_id=request_id)


def status_for(code: ErrorCode) -> int:
    if code is ErrorCode.decode_error:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.engine_unavailable:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if code is ErrorCode.empty_output:
        # The upstream model misbehaved, not the client
        return status.HTTP_502_BAD_GATEWAY
    if code is ErrorCode.unsupported_media_type:
        return status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    if code is ErrorCode.bad_dimensions:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.too_large:
        return status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    if code is ErrorCode.timeout:
        return status.HTTP_504_GATEWAY_TIMEOUT
    if code is ErrorCode.unauthorized:
        return status.HTTP_401_UNAUTHORIZED
    if code is ErrorCode.malformed_multipart:
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR
