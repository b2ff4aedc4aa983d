"""Error taxonomy for calls against the remote wallabag service."""


class RemoteError(Exception):
    """Base class for failures reported by a remote client."""

    retryable: bool = False

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code

    def __str__(self) -> str:
        if self.status_code is None:
            return self.message
        return f"{self.message} (HTTP {self.status_code})"


class TransportError(RemoteError):
    """Network failure, timeout or 5xx response. Safe to retry."""

    retryable = True


class NotFoundError(RemoteError):
    """The referenced entity does not exist on the server."""


class RemoteValidationError(RemoteError):
    """The server rejected the request (4xx other than auth and not-found)."""


class AuthError(RemoteError):
    """Credentials were rejected or the token could not be obtained."""
