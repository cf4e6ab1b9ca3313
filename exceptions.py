class PersistenceError(Exception):
    """Base class for failures of the backing file."""

    def __init__(self, path, message: str):
        super().__init__(f"{path}: {message}")
        self.path = path
        self.message = message


class PersistenceIOError(PersistenceError):
    """Raised when the backing file cannot be read or written."""


class PersistenceParseError(PersistenceError):
    """Raised when the backing file does not hold a valid account collection."""
