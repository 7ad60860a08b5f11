class FileServeError(Exception):
    """Base class for failures raised by the share engine."""


class NotFoundError(FileServeError):
    """A referenced file or share does not exist."""


class InvalidInputError(FileServeError, ValueError):
    """A caller supplied a malformed path, value or missing field."""


class FileTooLargeError(InvalidInputError):
    """Raised when a file's size cannot be represented in the store."""

    def __init__(self, path: str, size: int) -> None:
        super().__init__(f"File too large to register: {path} ({size} bytes)")
        self.path = path
        self.size = size


class PermissionDeniedError(FileServeError):
    """Filesystem metadata for a path could not be read."""


class AllocationExhaustedError(FileServeError):
    """Raised when no free slug was found within the retry bound.

    Safe to retry the whole creation call later.
    """

    def __init__(self, attempts: int) -> None:
        super().__init__(f"No free slug after {attempts} attempts")
        self.attempts = attempts


class StorageFaultError(FileServeError):
    """The underlying store is unreachable, closed or corrupted."""
