from typing import Dict, List, Optional

from flask import jsonify


class ApiError(Exception):
    """Base class for errors that are rendered as JSON responses."""

    status_code = 500
    kind = "InternalError"
    default_message = "An unexpected error occurred."

    def __init__(self, message: Optional[str] = None, details: Optional[List[Dict]] = None):
        super().__init__(message or self.default_message)
        self.message = message or self.default_message
        self.details = details

    def to_dict(self) -> Dict[str, object]:
        body: Dict[str, object] = {"error": self.kind, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body

    def to_response(self):
        return jsonify(self.to_dict()), self.status_code


class Unauthorized(ApiError):
    status_code = 401
    kind = "Unauthorized"
    default_message = "Authorization required."


class Forbidden(ApiError):
    status_code = 403
    kind = "Forbidden"
    default_message = "Forbidden access."


class NotFound(ApiError):
    status_code = 404
    kind = "NotFound"
    default_message = "Resource not found."


class ValidationError(ApiError):
    status_code = 400
    kind = "ValidationError"
    default_message = "The request could not be validated."


class Conflict(ApiError):
    status_code = 409
    kind = "Conflict"
    default_message = "The resource was modified by another request."


class RequestTimeout(ApiError):
    status_code = 408
    kind = "RequestTimeout"
    default_message = "The operation timed out. Please retry."

    def to_dict(self) -> Dict[str, object]:
        body = super().to_dict()
        body["retryable"] = True
        return body


class UpstreamError(ApiError):
    status_code = 503
    kind = "UpstreamError"
    default_message = "The data store is unavailable. Please try again later."


def pydantic_details(exc) -> List[Dict[str, str]]:
    """Flatten a pydantic ValidationError into JSON-safe field messages."""
    details = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()))
        details.append({"field": location, "message": error.get("msg", "")})
    return details
