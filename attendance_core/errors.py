from __future__ import annotations

from fastapi import Request
from fastapi.responses import JSONResponse


class ApiError(Exception):
    def __init__(self, status_code: int, code: str, message: str):
        super().__init__(message)
        self.status_code = status_code
        self.code = code
        self.message = message


class ConfigurationError(Exception):
    """A policy setting is missing or unusable; callers fall back to a default."""

    def __init__(self, setting_key: str, message: str):
        super().__init__(message)
        self.setting_key = setting_key


class RecordValidationError(Exception):
    """A single attendance record cannot be processed and must be skipped."""

    def __init__(self, log_id: int | None, message: str):
        super().__init__(message)
        self.log_id = log_id


class BatchTransactionError(Exception):
    """A backfill batch failed to commit and was rolled back."""

    def __init__(self, batch_number: int, resume_after_id: int | None, message: str):
        super().__init__(message)
        self.batch_number = batch_number
        self.resume_after_id = resume_after_id


def get_request_id(request: Request) -> str:
    request_id = getattr(request.state, "request_id", None)
    if request_id:
        return str(request_id)
    return "unknown"


def error_response(request: Request, *, status_code: int, code: str, message: str) -> JSONResponse:
    payload = {
        "error": {
            "code": code,
            "message": message,
            "request_id": get_request_id(request),
        }
    }
    return JSONResponse(status_code=status_code, content=payload)
