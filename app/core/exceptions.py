from typing import Any, Dict, Optional
from fastapi import HTTPException, status


class AppError(HTTPException):
    """Base for business-rule errors. Carries an HTTP status and optional details."""
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail: str = "An unexpected error occurred."

    def __init__(self, detail: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(status_code=self.status_code, detail=detail or self.default_detail)
        self.details = details


class NotFoundError(AppError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Resource not found."


class ForbiddenError(AppError):
    status_code = status.HTTP_403_FORBIDDEN
    default_detail = "You do not have permission to perform this action."


class BadRequestError(AppError):
    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Bad request."


class ConflictError(AppError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Request conflicts with the current state of the resource."


class VersionConflictError(ConflictError):
    default_detail = "Resource was modified by another user. Please refresh and try again."

    def __init__(self, current_version: int, expected_version: int, detail: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.current_version = current_version
        self.expected_version = expected_version
        super().__init__(detail, {
            **(details or {}),
            "current_version": current_version,
            "expected_version": expected_version,
            "error_type": "VersionConflict",
        })


class InternalError(AppError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_detail = "An unexpected error occurred."
