"""
Exception taxonomy for the bridge.

Upstream failures are normalized into two classes so callers can decide
between retrying (transient) and surfacing immediately (rejected).
"""


class BridgeError(Exception):
    """Base class for every error raised by deskbridge."""


class FormValidationError(BridgeError):
    """Required form fields are missing or malformed."""

    def __init__(self, errors: dict[str, str]):
        self.errors = errors
        super().__init__(", ".join(f"{field}: {message}" for field, message in errors.items()))


class UpstreamError(BridgeError):
    """An upstream call failed."""

    def __init__(self, message: str, service: str = "upstream", status_code: int | None = None,
                 body=None):
        self.service = service
        self.status_code = status_code
        self.body = body
        super().__init__(message)


class UpstreamTransient(UpstreamError):
    """Timeout, transport failure or 5xx. Safe to retry."""


class UpstreamRejected(UpstreamError):
    """4xx response. Retrying will not help."""

    @property
    def detail(self) -> str:
        """Best-effort human readable reason taken from the response body."""
        if isinstance(self.body, dict):
            if self.body.get("errors"):
                return str(self.body["errors"])
            if self.body.get("message"):
                return str(self.body["message"])
            if self.body.get("description"):
                return str(self.body["description"])
        return str(self)


class SessionLost(BridgeError):
    """Interaction state expected in the session store is gone (expired or restarted)."""
