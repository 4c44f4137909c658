"""
Exception hierarchy shared by services and blueprints.

Services raise these; a single Flask error handler (see ``register_error_handlers``)
maps them to JSON bodies and HTTP status codes. Nothing here is retried
automatically except ``PersistenceUnavailable``, which callers may retry.
"""

from __future__ import annotations

import logging
from typing import Any

from flask import Flask, g, jsonify

logger = logging.getLogger(__name__)


# Machine-readable error codes.
class E:
    VALIDATION = "ERR_VALIDATION_INVALID"
    UNAUTHENTICATED = "ERR_UNAUTHENTICATED"
    FORBIDDEN = "ERR_FORBIDDEN"
    NOT_FOUND = "ERR_NOT_FOUND"
    CONFLICT_DUPLICATE = "ERR_CONFLICT_DUPLICATE"
    CONFLICT_STATE = "ERR_CONFLICT_STATE"
    CONFLICT_GROUPING = "ERR_CONFLICT_GROUPING"
    DATABASE_UNAVAILABLE = "ERR_DATABASE_UNAVAILABLE"
    INTERNAL = "ERR_INTERNAL"


class GalleryError(Exception):
    status_code = 400
    code = E.VALIDATION
    retryable = False

    def public_message(self) -> str:
        return str(self)

    def details(self) -> dict[str, Any] | None:
        return None


class ValidationError(GalleryError):
    """Well-formed request carrying unusable input (missing field, bad enum value)."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self._details = details or {}
        super().__init__(message)

    def details(self) -> dict[str, Any] | None:
        return self._details or None


class AuthenticationRequired(GalleryError):
    status_code = 401
    code = E.UNAUTHENTICATED

    def __init__(self) -> None:
        super().__init__("Authentication required")


class AuthorizationDenied(GalleryError):
    """
    The decision table refused the operation.

    ``reason`` is kept for logs only; the HTTP body never exposes it.
    """

    status_code = 403
    code = E.FORBIDDEN

    def __init__(self, *, actor_id: int | None, operation: str, resource: str, reason: str) -> None:
        self.actor_id = actor_id
        self.operation = operation
        self.resource = resource
        self.reason = reason
        super().__init__(f"{operation} on {resource} denied for actor={actor_id}: {reason}")

    def public_message(self) -> str:
        return "Insufficient permissions"


class NotFound(GalleryError):
    status_code = 404
    code = E.NOT_FOUND

    def __init__(self, resource_type: str, resource_id: int | str | None = None) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        msg = resource_type
        if resource_id is not None:
            msg += f" id={resource_id}"
        super().__init__(msg + " not found")

    def public_message(self) -> str:
        return f"{self.resource_type} not found"


class ConflictError(GalleryError):
    """Uniqueness clash or a delete blocked by dependent rows."""

    status_code = 409
    code = E.CONFLICT_DUPLICATE

    def __init__(self, resource: str, field: str, value: str | None = None, message: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} already exists")


class WorkflowViolation(GalleryError):
    """A submission transition guard was not met."""

    status_code = 409
    code = E.CONFLICT_STATE

    def __init__(self, *, from_status: str | None, event: str, guard: str, message: str | None = None) -> None:
        self.from_status = from_status
        self.event = event
        self.guard = guard
        super().__init__(message or f"Cannot {event} from status {from_status or '(none)'}: {guard}")

    def details(self) -> dict[str, Any] | None:
        return {"fromStatus": self.from_status, "attemptedEvent": self.event, "guard": self.guard}


class InvalidTransition(WorkflowViolation):
    def __init__(self, *, from_status: str | None, event: str) -> None:
        super().__init__(
            from_status=from_status,
            event=event,
            guard="status",
            message=f"Cannot {event} a picture set with status {from_status}",
        )


class GroupingInvariantViolation(GalleryError):
    ALREADY_GROUPED = "ALREADY_GROUPED"
    BELOW_MINIMUM_SIZE = "BELOW_MINIMUM_SIZE"
    PRIMARY_NOT_MEMBER = "PRIMARY_NOT_MEMBER"

    status_code = 409
    code = E.CONFLICT_GROUPING

    def __init__(self, kind: str, *, picture_ids: list[int] | None = None, message: str | None = None) -> None:
        self.kind = kind
        self.picture_ids = picture_ids or []
        super().__init__(message or kind)

    def details(self) -> dict[str, Any] | None:
        out: dict[str, Any] = {"kind": self.kind}
        if self.picture_ids:
            out["pictureIds"] = self.picture_ids
        return out


class PersistenceUnavailable(GalleryError):
    """The store could not be reached or timed out. Safe to retry."""

    status_code = 503
    code = E.DATABASE_UNAVAILABLE
    retryable = True

    def __init__(self, message: str = "Storage temporarily unavailable") -> None:
        super().__init__(message)

    def details(self) -> dict[str, Any] | None:
        return {"retryable": True}


def error_body(err: GalleryError) -> dict[str, Any]:
    body: dict[str, Any] = {"error": err.public_message(), "code": err.code}
    details = err.details()
    if details:
        body["details"] = details
    return body


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(GalleryError)
    def _gallery_error(err: GalleryError):  # type: ignore[no-redef]
        rid = getattr(g, "request_id", None)
        if isinstance(err, AuthorizationDenied):
            app.logger.warning(
                "Forbidden: operation=%s resource=%s actor=%s reason=%s request_id=%s",
                err.operation,
                err.resource,
                err.actor_id,
                err.reason,
                rid,
            )
        elif isinstance(err, PersistenceUnavailable):
            app.logger.error("Persistence unavailable (request_id=%s): %s", rid, err)
        else:
            app.logger.info("%s (request_id=%s): %s", type(err).__name__, rid, err)
        resp = jsonify(error_body(err))
        resp.status_code = err.status_code
        if err.retryable:
            resp.headers["Retry-After"] = "1"
        return resp

    @app.errorhandler(404)
    def _err_404(e):  # type: ignore[no-redef]
        return jsonify({"error": "Not found", "code": E.NOT_FOUND}), 404

    @app.errorhandler(405)
    def _err_405(e):  # type: ignore[no-redef]
        return jsonify({"error": "Method not allowed", "code": E.VALIDATION}), 405

    @app.errorhandler(413)
    def _err_413(e):  # type: ignore[no-redef]
        return jsonify({"error": "Upload too large", "code": E.VALIDATION}), 413

    @app.errorhandler(500)
    def _err_500(e):  # type: ignore[no-redef]
        app.logger.exception("Unhandled 500 (request_id=%s)", getattr(g, "request_id", None))
        return jsonify({"error": "Internal server error", "code": E.INTERNAL}), 500
