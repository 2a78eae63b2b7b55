"""
Domain error taxonomy.

Every error carries the HTTP status it maps to, so the API layer can render
them with a single exception handler.
"""

from typing import Optional


class ChatRelayError(Exception):
    """Base class for all domain errors."""

    status_code = 500
    code = "internal_error"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidIdentifier(ChatRelayError):
    """Malformed phone number or account id."""

    status_code = 400
    code = "invalid_identifier"


class InvalidRequest(ChatRelayError):
    """Request is well-formed but cannot be honoured (empty group, bad template, ...)."""

    status_code = 400
    code = "invalid_request"


class DuplicateMessage(ChatRelayError):
    """A message with this id is already stored. Callers treat it as a no-op."""

    status_code = 409
    code = "duplicate_message"

    def __init__(self, message_id: str):
        super().__init__(f"message {message_id} already stored")
        self.message_id = message_id


class NotFound(ChatRelayError):
    status_code = 404
    code = "not_found"


class Forbidden(ChatRelayError):
    status_code = 403
    code = "forbidden"


class UpstreamSendFailure(ChatRelayError):
    """The messaging provider rejected the send or did not answer in time."""

    status_code = 502
    code = "send_failed"

    def __init__(self, detail: str, upstream_status: Optional[int] = None):
        super().__init__(detail)
        self.upstream_status = upstream_status


class StorageFailure(ChatRelayError):
    """Media store unavailable or media could not be mirrored."""

    status_code = 503
    code = "storage_unavailable"


class ImportFailure(ChatRelayError):
    """A contact import batch failed and was rolled back as a whole."""

    status_code = 500
    code = "import_failed"


class InvalidPhone(ValueError):
    """Row-level rejection raised while validating imported phone numbers."""

    def __init__(self, value: str, reason: str):
        super().__init__(f"{value}: {reason}")
        self.value = value
        self.reason = reason
