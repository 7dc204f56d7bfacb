"""Domain errors raised by the service modules.

Each error carries a machine-readable ``code`` and the HTTP status the API
layer answers with; ``main.create_app`` registers the handler that renders
them as ``{"error": {"code": ..., "message": ...}}``.
"""
from typing import Optional


class ServiceError(Exception):
    status_code = 500
    default_code = "INTERNAL_ERROR"

    def __init__(self, code: Optional[str] = None, message: Optional[str] = None):
        self.code = code or self.default_code
        self.message = message or self.code.replace("_", " ").capitalize()
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "message": self.message}}


class NotFoundError(ServiceError):
    status_code = 404
    default_code = "NOT_FOUND"


class ForbiddenError(ServiceError):
    status_code = 403
    default_code = "FORBIDDEN"


class InvalidRequestError(ServiceError):
    status_code = 400
    default_code = "VALIDATION_ERROR"
