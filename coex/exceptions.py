"""
Coex Exceptions

Custom exception classes for the limit-order executor.
"""


class CoexException(Exception):
    """Base exception for the executor."""
    pass


class RPCError(CoexException):
    """The node answered with a JSON-RPC error object."""

    def __init__(self, method: str, code: int, message: str, data=None):
        self.method = method
        self.code = code
        self.message = message
        self.data = data
        super().__init__(f"{method} failed ({code}): {message}")


class TransientRPCError(CoexException):
    """The node could not be reached or returned an unusable response."""
    pass


class DecodeError(CoexException):
    """Event payload or call result does not match the expected ABI shape."""
    pass


class DispatchError(CoexException):
    """Gas estimation, signing or submission of a transaction failed."""
    pass


class InsufficientFundsError(DispatchError):
    """The executor wallet cannot pay for the transaction."""
    pass


class StartupError(CoexException):
    """Unrecoverable condition detected before event processing starts."""
    pass


class ConfigurationError(StartupError):
    """Invalid configuration value."""
    pass
