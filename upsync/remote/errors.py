class RemoteError(Exception):
    """Base error for calls against the remote banking API."""


class AuthFailure(RemoteError):
    """Token rejected (401) or lacking permission (403). Not retried."""

    def __init__(self, message: str, status_code: int = 401):
        super().__init__(message)
        self.status_code = status_code


class RemoteApiError(RemoteError):
    """Any other non-success response."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class RateLimited(RemoteApiError):
    """Still rate limited by the remote side after the retry policy ran out."""


class ConflictDetected(Exception):
    """The remote value moved independently since a local edit was queued."""

    def __init__(self, field: str, remote_value, old_value, new_value):
        super().__init__(
            f"Remote {field} changed since queued: remote has {remote_value!r}, "
            f"queued from {old_value!r} to {new_value!r}"
        )
        self.field = field
        self.remote_value = remote_value
        self.old_value = old_value
        self.new_value = new_value


class TrackingFailure(Exception):
    """Budget tracker could not read or persist its counter."""
