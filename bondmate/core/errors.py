"""Typed failures raised by the partner lifecycle services.

Each error carries the HTTP status the API layer answers with, so services
stay free of FastAPI imports and routers only need one exception handler.
"""


class PartnerError(Exception):
    status_code = 400

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationError(PartnerError):
    status_code = 400


class ConflictError(PartnerError):
    status_code = 409


class NotFoundError(PartnerError):
    status_code = 404


class AuthorizationError(PartnerError):
    status_code = 403


class InfrastructureError(PartnerError):
    status_code = 500
