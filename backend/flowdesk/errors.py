"""Domain exceptions and their JSON error responses."""

from __future__ import annotations

from http import HTTPStatus
from typing import Any

from flask import Flask, jsonify


class FlowdeskError(Exception):
    """Base class for errors raised by the workflow engine and its services."""

    status_code: int = HTTPStatus.BAD_REQUEST
    code: str = "error"

    def __init__(self, message: str, *, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.errors = list(errors or [])

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.errors:
            payload["errors"] = self.errors
        return payload


class ValidationError(FlowdeskError):
    """Raised when a payload fails validation."""

    code = "validation_error"


class DefinitionError(ValidationError):
    """Raised when a workflow definition is malformed."""

    code = "invalid_definition"


class PermissionDenied(FlowdeskError):
    status_code = HTTPStatus.FORBIDDEN
    code = "permission_denied"


class NotFound(FlowdeskError):
    status_code = HTTPStatus.NOT_FOUND
    code = "not_found"


class InvalidTransition(FlowdeskError):
    """Raised when an event is not allowed in the current state."""

    status_code = HTTPStatus.CONFLICT
    code = "invalid_transition"


class ConcurrencyConflict(FlowdeskError):
    """Raised when a row changed underneath the current transaction."""

    status_code = HTTPStatus.CONFLICT
    code = "concurrency_conflict"


def register_error_handlers(app: Flask) -> None:
    """Render domain errors as JSON and hide unexpected failures."""

    @app.errorhandler(FlowdeskError)
    def _handle_domain_error(exc: FlowdeskError):
        if exc.status_code >= HTTPStatus.INTERNAL_SERVER_ERROR:
            app.logger.error("Request failed: %s", exc.message)
        return jsonify(exc.to_dict()), exc.status_code

    @app.errorhandler(HTTPStatus.NOT_FOUND)
    def _handle_missing_route(_exc: Exception):
        return jsonify({"error": "not_found", "message": "resource not found"}), HTTPStatus.NOT_FOUND

    @app.errorhandler(HTTPStatus.INTERNAL_SERVER_ERROR)
    def _handle_unexpected(exc: Exception):
        app.logger.exception("Unhandled error: %s", exc)
        return (
            jsonify({"error": "internal_error", "message": "internal server error"}),
            HTTPStatus.INTERNAL_SERVER_ERROR,
        )
