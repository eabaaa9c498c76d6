"""minibug exception hierarchy."""


class MinibugError(Exception):
    """Base exception for all minibug errors."""


class ConfigurationError(MinibugError):
    """Raised when identity or session bootstrap fails. Fatal for the session."""


class SubscriptionError(MinibugError):
    """Raised when the live issue feed fails. Terminal for that cache instance."""


class ValidationError(MinibugError):
    """Raised when caller-supplied fields are incomplete, before any remote call."""


class NotFoundError(MinibugError):
    """Raised when a mutation targets an issue that no longer exists."""

    def __init__(self, issue_id: str, message: str | None = None) -> None:
        self.issue_id = issue_id
        super().__init__(message or f"Issue '{issue_id}' not found")


class TransportError(MinibugError):
    """Raised when a create/update/delete call to the store fails."""
