"""Error taxonomy for the messaging core.

Store operations hand these back inside their result objects instead of
raising them, so a failed send or list load never unwinds unrelated state.
"""


class MessagingError(Exception):
    """Base class for all messaging errors."""

    retryable: bool = False

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class AuthenticationError(MessagingError):
    """Viewer identity missing or expired; prompt re-authentication."""


class TransportError(MessagingError):
    """Request did not complete or the server returned a non-success status."""

    retryable = True

    def __init__(self, message: str = "", status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class InvalidInputError(MessagingError):
    """Rejected locally before any network call."""


class BusinessScopePendingError(MessagingError):
    """The conversation's business id is not provisioned yet."""

    retryable = True
