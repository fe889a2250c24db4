"""Domain errors shared by services and routes.

Every error carries an HTTP status and a stable ``reason`` string that
clients can match on. Routes let these propagate; the handler registered in
``tabpay.main`` renders them as ``{"success": false, "detail", "reason"}``.
"""

from typing import Any, Dict, Optional


class TabPayError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code = 500
    default_reason = "internal_error"

    def __init__(self, message: str, reason: Optional[str] = None, related_id: Optional[str] = None):
        self.message = message
        self.reason = reason or self.default_reason
        self.related_id = related_id
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        return {"success": False, "detail": self.message, "reason": self.reason}


class InvalidArgument(TabPayError):
    """Malformed or missing request fields."""

    status_code = 400
    default_reason = "invalid_argument"


class NotFound(TabPayError):
    """Unknown table, order, order group, invoice or restaurant."""

    status_code = 404
    default_reason = "not_found"


class Forbidden(TabPayError):
    """Access to another restaurant's data."""

    status_code = 403
    default_reason = "forbidden"


class Conflict(TabPayError):
    """State conflict such as settling an already paid order group.

    Answered as 400: clients of the pay endpoint expect a bad request.
    """

    status_code = 400
    default_reason = "conflict"


class UpstreamFailure(TabPayError):
    """A dependent step failed after payment was already recorded."""

    status_code = 502
    default_reason = "upstream_failure"
