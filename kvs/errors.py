"""Exceptions raised by the key/value store."""


class KvsError(Exception):
    """Base class for every error the store, its server or its client reports."""


class KeyNotFoundError(KvsError):
    """Raised when removing a key that does not exist."""

    def __init__(self, message: str = "Key not found") -> None:
        super().__init__(message)


class UnexpectedCommandTypeError(KvsError):
    """Raised when a log entry holds a command of the wrong type.

    It points to a corrupted log or a bug in the store.
    """

    def __init__(self, message: str = "Unexpected command type") -> None:
        super().__init__(message)


class ProtocolError(KvsError):
    """Raised when a message or log entry cannot be encoded or decoded."""