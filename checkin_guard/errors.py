# checkin_guard/errors.py
"""
Check-in error taxonomy.

Policy denials are expected outcomes and carry a ``DenyDescriptor`` for the UI.
Everything else (bad credentials, lock contention, grant problems, missing
records) gets its own type so the caller can tell "access denied" apart from
"try again" or "request a new override".
"""
from datetime import datetime
from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder

from checkin_guard.models.checkin import DenyDescriptor


class CheckinError(Exception):
    status_code = 400
    error = "Check-in error"

    def __init__(self, message: str, **extra: Any):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> Dict[str, Any]:
        return jsonable_encoder({"error": self.error, "message": self.message, **self.extra})


class InvalidRequest(CheckinError):
    status_code = 400
    error = "Invalid request"


class NotFoundError(CheckinError):
    status_code = 404
    error = "Not found"


class CheckinDenied(CheckinError):
    """A guard (or structural check) refused the scan."""

    def __init__(self, descriptor: DenyDescriptor):
        super().__init__(descriptor.message)
        self.descriptor = descriptor
        self.status_code = 409 if descriptor.reason == "already_checked_in" else 403

    @property
    def reason(self) -> str:
        return self.descriptor.reason

    def to_dict(self) -> Dict[str, Any]:
        return jsonable_encoder(self.descriptor)


class LockContention(CheckinError):
    status_code = 409
    error = "Concurrent check-in in progress"

    def __init__(self, locked_by: Optional[str], locked_at: Optional[datetime]):
        super().__init__(
            "Another check-in is in progress for this ticket. Try again in a moment.",
            reason="concurrent_checkin",
            locked_by=locked_by,
            locked_at=locked_at,
        )
        self.locked_by = locked_by
        self.locked_at = locked_at


class OverrideAuthError(CheckinError):
    status_code = 401
    error = "Override authorization failed"

    def __init__(self, message: str, field: str, status_code: int = 401):
        super().__init__(message, field=field)
        self.field = field
        self.status_code = status_code


class GrantError(CheckinError):
    status_code = 401
    error = "Invalid override token"


class GrantExpired(GrantError):
    error = "Override token expired"

    def __init__(self):
        super().__init__("Authorization expired. Please request a new override.")


class GrantMismatch(GrantError):
    status_code = 403
    error = "Override token mismatch"

    def __init__(self, detail: str = "Token does not match this check-in request."):
        super().__init__(detail)


class GrantInvalid(GrantError):
    def __init__(self):
        super().__init__("Invalid authorization token.")
