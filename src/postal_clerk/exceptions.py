"""Custom exceptions for Postal Clerk.

This module defines the exception hierarchy used throughout the
Postal Clerk package. Every core operation either returns its result or
raises one of these; the CLI maps them to exit codes.
"""


class PostalClerkError(Exception):
    """Base exception for all Postal Clerk errors.

    All custom exceptions in the postal_clerk package inherit from
    this class, allowing for broad exception catching when needed.

    Attributes:
        message: A human-readable description of the error.
    """

    def __init__(self, message: str = "An error occurred in Postal Clerk") -> None:
        """Initialize the exception with an optional message.

        Args:
            message: A description of the error that occurred.
        """
        self.message = message
        super().__init__(self.message)


class ConfigurationError(PostalClerkError):
    """Raised when there is an error in the configuration.

    This exception is raised when configuration files are missing,
    malformed, contain invalid values, or name an unknown account.
    """

    def __init__(self, message: str = "Configuration error") -> None:
        super().__init__(message)


class ParseError(PostalClerkError):
    """Raised when user input (range, flags, mailto URI, message text) is malformed.

    Attributes:
        token: The offending piece of input, if one can be singled out.
    """

    def __init__(self, message: str = "Parse error", token: str | None = None) -> None:
        """Initialize the exception with a message and the offending token.

        Args:
            message: A description of the parse error.
            token: The input fragment that could not be parsed.
        """
        self.token = token
        super().__init__(message)


class ConnectionFailedError(PostalClerkError):
    """Raised when a session cannot be opened (network or authentication failure)."""

    def __init__(self, message: str = "Connection failed") -> None:
        super().__init__(message)


class ConnectionLostError(ConnectionFailedError):
    """Raised when an open connection drops in the middle of a session."""

    def __init__(self, message: str = "Connection lost") -> None:
        super().__init__(message)


class ProtocolError(PostalClerkError):
    """Raised when the server rejects a command.

    The message carries the server's response verbatim.
    """

    def __init__(self, message: str = "Server rejected command") -> None:
        super().__init__(message)


class NotFoundError(PostalClerkError):
    """Raised when an addressed message or mailbox does not exist."""

    def __init__(self, message: str = "Not found") -> None:
        super().__init__(message)


class InvalidStateError(PostalClerkError):
    """Raised when a session operation is issued in the wrong state.

    For example, fetching before a mailbox has been selected.
    """

    def __init__(self, message: str = "Invalid session state") -> None:
        super().__init__(message)


class DeliveryError(PostalClerkError):
    """Raised when sending a message fails.

    This exception is raised when the delivery server refuses the
    message or the transmission breaks off.
    """

    def __init__(self, message: str = "Email delivery error") -> None:
        super().__init__(message)
