"""Error taxonomy shared by the upload front doors.

Every error carries a stable ``kind`` that clients can branch on, a human
readable message and optional structured detail. The API layer maps ``kind``
to an HTTP status in one place (see ``specimen_ingest.main``).
"""

from __future__ import annotations

from typing import Any


class UploadError(Exception):
    kind: str = "upload_error"
    status_code: int = 500

    def __init__(self, message: str, **detail: Any):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.detail:
            payload["detail"] = self.detail
        return payload


class InvalidArgument(UploadError):
    kind = "invalid_argument"
    status_code = 400


class InvalidState(UploadError):
    kind = "invalid_state"
    status_code = 409


class NotFound(UploadError):
    kind = "not_found"
    status_code = 404


class Conflict(UploadError):
    kind = "conflict"
    status_code = 409


class ContentIntegrityError(UploadError):
    """Assembled bytes do not hash to the declared value. Terminal for the upload."""

    kind = "integrity_error"
    status_code = 422

    def __init__(self, *, expected: str, received: str):
        super().__init__("File integrity check failed", expected=expected, received=received)
        self.expected = expected
        self.received = received


class Unavailable(UploadError):
    """The blob backend failed. No upload state was advanced, so the call may be retried."""

    kind = "unavailable"
    status_code = 503


__all__ = [
    "UploadError",
    "InvalidArgument",
    "InvalidState",
    "NotFound",
    "Conflict",
    "ContentIntegrityError",
    "Unavailable",
]
