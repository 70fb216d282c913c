from __future__ import annotations

from typing import Any, Optional

from app.utils.error_codes import ErrorCode, ERROR_MESSAGES


def _normalize_error_code(value: ErrorCode | str | None) -> ErrorCode:
    if value is None:
        return ErrorCode.INTERNAL_ERROR
    if isinstance(value, ErrorCode):
        return value
    try:
        return ErrorCode(str(value))
    except ValueError:
        return ErrorCode.INTERNAL_ERROR


class AppException(Exception):
    """Base exception for the application.

    API response format is handled by the global exception handler:
    `{"error": <code>, "message": <text>, **details}`.
    """

    def __init__(
        self,
        message: str | None = None,
        *,
        code: ErrorCode | str = ErrorCode.INTERNAL_ERROR,
        details: Optional[dict[str, Any]] = None,
        status_code: int = 500,
    ):
        normalized = _normalize_error_code(code)
        if message is None:
            message = ERROR_MESSAGES.get(normalized, ERROR_MESSAGES[ErrorCode.INTERNAL_ERROR])

        self.message = message
        self.code = normalized.value
        self.details = details or {}
        self.status_code = status_code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {**self.details, "error": self.code, "message": self.message}


class BadRequestException(AppException):
    def __init__(
        self,
        message: str | None = None,
        *,
        code: ErrorCode | str = ErrorCode.INVALID_INPUT,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, details=details, status_code=400)


class UnauthorizedException(AppException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message or "Unauthorized", code=ErrorCode.UNAUTHORIZED, details=details, status_code=401)


class NotFoundException(AppException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message or "Not Found", code=ErrorCode.NOT_FOUND, details=details, status_code=404)


class ForbiddenException(AppException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message or "Forbidden", code=ErrorCode.FORBIDDEN, details=details, status_code=403)


class ConflictException(AppException):
    def __init__(
        self,
        message: str | None = None,
        *,
        code: ErrorCode | str = ErrorCode.ALREADY_RUNNING,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, details=details, status_code=409)


class TooManyRequestsException(AppException):
    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(
            message or "Too many requests", code=ErrorCode.TOO_MANY_REQUESTS, details=details, status_code=429
        )


class SimulationNotAllowedException(AppException):
    """Raised by the sandbox guard outside a verified sandbox context."""

    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message, code=ErrorCode.SIMULATION_NOT_ALLOWED, details=details, status_code=403)


class AlreadyRunningException(ConflictException):
    def __init__(self, run_id: str):
        super().__init__(code=ErrorCode.ALREADY_RUNNING, details={"runId": run_id})
        self.run_id = run_id


class SandboxServerError(AppException):
    """Base class for sandbox child-process failures.

    `message` carries the diagnostic detail (e.g. captured build output).
    """

    default_code: ErrorCode = ErrorCode.SANDBOX_START_FAILED

    def __init__(self, message: str | None = None, *, details: Optional[dict[str, Any]] = None):
        super().__init__(message, code=self.default_code, details=details, status_code=500)


class SandboxBuildFailedError(SandboxServerError):
    default_code = ErrorCode.SANDBOX_SERVER_BUILD_FAILED


class SandboxMissingBuildError(SandboxServerError):
    default_code = ErrorCode.SANDBOX_SERVER_MISSING_BUILD


class SandboxHealthCheckTimeoutError(SandboxServerError):
    default_code = ErrorCode.SANDBOX_HEALTH_CHECK_TIMEOUT
