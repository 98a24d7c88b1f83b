from __future__ import annotations


class ElectionError(Exception):
    pass


class ElectionNotFoundError(ElectionError):
    pass


class ElectionValidationError(ElectionError):
    pass


class ElectionNotOpenError(ElectionValidationError):
    pass


class ElectionForbiddenError(ElectionError):
    """Raised when voters try to join an election that is not open."""

    def __init__(self, message: str, *, status: str) -> None:
        super().__init__(message)
        self.status = status


class ElectionConflictError(ElectionError):
    """A uniqueness constraint rejected the write; nothing was applied."""

    def __init__(self, message: str, *, constraint: str) -> None:
        super().__init__(message)
        self.constraint = constraint


class ElectionCodeExhaustedError(ElectionConflictError):
    pass


class ElectionInternalError(ElectionError):
    pass
