"""
Tracking Exceptions
===================

Error taxonomy for the event preparation and Conversions API delivery path.

WHY THIS FILE EXISTS
--------------------
The tracking core has failure modes that must be told apart by callers:
- A bad event (missing name, incomplete purchase) is never retried
- A network failure is retried with backoff
- A platform rejection is terminal and carries Meta's error payload
- Missing credentials disable delivery without crashing the host process

Duplicates are NOT errors; see `app.schemas.DuplicateEvent`.

RELATED FILES
-------------
- app/services/event_preparation.py: Raises ValidationError
- app/services/meta_capi_service.py: Builds TransportError / PlatformRejection / ConfigurationError
- app/services/funnel_bridge.py: Converts all of these into failed results
"""

from typing import Any, Dict, List, Optional


class TrackingError(Exception):
    """
    Base exception for all tracking errors.

    WHAT:
        Parent class carrying a human-readable message and optional details.

    WHY:
        Lets entry points catch every tracking failure with one except clause
        and still serialize the specific kind into a result.
    """

    kind = "tracking_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Serialize for API responses and DeliveryResult.error."""
        data: Dict[str, Any] = {"type": self.kind, "message": self.message}
        if self.details:
            data["details"] = self.details
        return data


class ValidationError(TrackingError):
    """
    A required event field is missing or invalid.

    WHAT:
        Raised by the preparation pipeline for a bad event name or an
        incomplete purchase-class event.

    WHY:
        The caller must see exactly which fields are missing; the event is
        never sent and never retried.
    """

    kind = "validation_error"

    def __init__(self, missing: List[str], message: Optional[str] = None):
        self.missing = list(missing)
        super().__init__(
            message or f"Missing or invalid required field(s): {', '.join(self.missing)}",
            details={"missing": self.missing},
        )


class TransportError(TrackingError):
    """Network failure, timeout or 5xx from the Conversions API (retryable)."""

    kind = "transport_error"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        attempts: int = 0,
        cause: Optional[BaseException] = None,
    ):
        details: Dict[str, Any] = {"attempts": attempts}
        if status_code is not None:
            details["status_code"] = status_code
        if cause is not None:
            details["cause"] = repr(cause)
        super().__init__(message, details=details)
        self.status_code = status_code
        self.attempts = attempts
        self.cause = cause


class PlatformRejection(TrackingError):
    """
    Meta answered but did not accept the batch.

    Covers 4xx responses and 200 responses whose `events_received` does not
    match the number of events sent. Never retried.
    """

    kind = "platform_rejection"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        payload: Optional[Any] = None,
    ):
        super().__init__(
            message,
            details={"status_code": status_code, "payload": payload},
        )
        self.status_code = status_code
        self.payload = payload


class ConfigurationError(TrackingError):
    """Pixel id or access token missing; the delivery client refuses to send."""

    kind = "configuration_error"
