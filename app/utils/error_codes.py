from __future__ import annotations

from enum import Enum


class ErrorCode(str, Enum):
    """Stable error codes returned in the `error` field of every error response."""

    # Policy
    SIMULATION_NOT_ALLOWED = "simulation_not_allowed"
    # Concurrency
    ALREADY_RUNNING = "already_running"
    # Sandbox infrastructure
    SANDBOX_SERVER_NOT_RUNNING = "sandbox_server_not_running"
    SANDBOX_HEALTH_CHECK_TIMEOUT = "sandbox_health_check_timeout"
    SANDBOX_SERVER_MISSING_BUILD = "sandbox_server_missing_build"
    SANDBOX_SERVER_BUILD_FAILED = "sandbox_server_build_failed"
    SANDBOX_START_FAILED = "sandbox_start_failed"
    SANDBOX_PROXY_FAILED = "sandbox_proxy_failed"
    ALREADY_IN_SANDBOX = "already_in_sandbox"
    CANNOT_STOP_FROM_SANDBOX = "cannot_stop_from_sandbox"
    # Run lifecycle
    START_FAILED = "start_failed"
    # Generic
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    INVALID_INPUT = "invalid_input"
    TOO_MANY_REQUESTS = "too_many_requests"
    INTERNAL_ERROR = "internal_error"


ERROR_MESSAGES: dict[ErrorCode, str] = {
    ErrorCode.SIMULATION_NOT_ALLOWED: "Simulation is only allowed against a sandbox database",
    ErrorCode.ALREADY_RUNNING: "A simulation run is already running",
    ErrorCode.SANDBOX_SERVER_NOT_RUNNING: "Sandbox server is not running",
    ErrorCode.SANDBOX_HEALTH_CHECK_TIMEOUT: "Sandbox server did not become healthy in time",
    ErrorCode.SANDBOX_SERVER_MISSING_BUILD: "Sandbox server build artifact is missing",
    ErrorCode.SANDBOX_SERVER_BUILD_FAILED: "Sandbox server build failed",
    ErrorCode.SANDBOX_START_FAILED: "Sandbox server failed to start",
    ErrorCode.SANDBOX_PROXY_FAILED: "Request to the sandbox server failed",
    ErrorCode.ALREADY_IN_SANDBOX: "Already running inside the sandbox",
    ErrorCode.CANNOT_STOP_FROM_SANDBOX: "The sandbox server cannot stop itself",
    ErrorCode.START_FAILED: "Simulation failed to start",
    ErrorCode.NOT_FOUND: "Not found",
    ErrorCode.UNAUTHORIZED: "Unauthorized",
    ErrorCode.FORBIDDEN: "Forbidden",
    ErrorCode.INVALID_INPUT: "Validation error",
    ErrorCode.TOO_MANY_REQUESTS: "Too many requests",
    ErrorCode.INTERNAL_ERROR: "Internal server error",
}
