"""Storage error hierarchy.

"Not found" is deliberately absent: read operations return ``None`` (or an
empty collection) for missing records instead of raising.
"""


class StorageError(Exception):
    """Base exception for storage errors."""

    pass


class BackendUnavailable(StorageError):
    """Raised when a write cannot reach the backend or the backend fails."""

    pass


class ConstraintViolation(StorageError):
    """Raised when a write violates a uniqueness or integrity constraint."""

    pass


class UserAlreadyExists(ConstraintViolation):
    """Raised when registering a username that is already taken."""

    def __init__(self, username: str):
        super().__init__(f"User already exists: {username}")
        self.username = username


class DecodeFailure(StorageError):
    """Raised by strict decoding when a stored payload is malformed."""

    pass
