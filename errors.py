class RemnantError(Exception):
    """Base class for inventory and residual scan failures."""


class RegistryError(RemnantError):
    """A registry key could not be opened, read or deleted."""

    def __init__(self, path: str, reason: str = "") -> None:
        self.path = path
        self.reason = reason
        message = f"Registry key {path}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DataNotFound(RemnantError):
    pass


class OperationCancelled(RemnantError):
    pass


class OperationInProgress(RemnantError):
    pass


class FileSystemError(RemnantError):
    def __init__(self, path: str, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}")


class InvalidState(RemnantError):
    """The scanner is not in a state that allows the requested operation."""
