class MusicHubError(Exception):
    """Base for every failure raised by the client core. None of them is fatal."""


class AuthError(MusicHubError):
    """Bad credentials or identity provider failure."""


class AuthRequiredError(MusicHubError):
    """Operation needs a signed-in user."""


class VerificationRequiredError(MusicHubError):
    """Operation needs a user whose email has been verified."""


class ValidationError(MusicHubError):
    """Caller input was rejected before reaching any remote service."""


class RateLimited(MusicHubError):
    """Operation is blocked locally for a while. Includes suggested wait time in milliseconds."""

    def __init__(self, retry_after_ms: int, message: str = "Rate limited") -> None:
        super().__init__(message)
        self.retry_after_ms = retry_after_ms


class NotFound(MusicHubError):
    """Requested resource was not found."""


class PersistenceError(MusicHubError):
    """Remote library write or read failed. Retrying may succeed."""


class NetworkError(MusicHubError):
    """Catalog search or stream fetch failed."""


class PlaybackError(MusicHubError):
    """Audio transport rejected or failed a request. The engine stays usable."""
