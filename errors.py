"""
Error taxonomy for StreetSage.

Every error a caller can correct (or that the HTTP layer needs to map to a
status code) is a ServiceError subclass. The Flask error handler in app.py
serialises them as {"ok": false, "error": code, "message": ...}.
"""

from typing import Dict, Optional


class ServiceError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    code = "error"
    public_message = "Something went wrong."

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)
        self.message = message or self.public_message

    def to_dict(self) -> dict:
        return {"ok": False, "error": self.code, "message": self.message}


class InvalidPayload(ServiceError):
    """Client-correctable field errors. Lists every failing field."""

    status_code = 400
    code = "invalid-payload"
    public_message = "Some fields need attention."

    def __init__(self, fields: Dict[str, str], message: Optional[str] = None):
        super().__init__(message)
        self.fields = dict(fields)

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["fields"] = self.fields
        return data


class Unauthorized(ServiceError):
    status_code = 401
    code = "unauthorized"
    public_message = "Unauthorized"


class NotFound(ServiceError):
    status_code = 404
    code = "not-found"
    public_message = "We couldn't find that place."


class CaptchaFailed(ServiceError):
    status_code = 400
    code = "captcha-failed"
    public_message = "Captcha verification failed. Please try again."


class TooManyRequests(ServiceError):
    status_code = 429
    code = "too-many-requests"
    public_message = "Too many submissions. Please try later."


class StorageUnavailable(ServiceError):
    """Backing store misconfigured or unreachable. Message is always generic."""

    status_code = 503
    code = "storage-unavailable"
    public_message = "The service is temporarily unavailable."


class InvalidTransition(ServiceError):
    """A moderation action that is not allowed from the record's current state."""

    status_code = 409
    code = "invalid-transition"
    public_message = "That action is not allowed for this record."
