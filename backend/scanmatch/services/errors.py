"""Error types shared by the reconciliation services."""

from typing import Optional


class ScanMatchError(Exception):
    """Base class for all service errors."""

    def __init__(self, message: str, detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def __str__(self) -> str:
        if self.detail:
            return f"{self.message} ({self.detail})"
        return self.message


class ValidationError(ScanMatchError):
    """Normalized code is empty or rejected by the prefix filter."""


class DuplicateError(ScanMatchError):
    """A session id is already in use."""


class PersistenceError(ScanMatchError):
    """A row store call failed (network, timeout, constraint violation)."""


class PreconditionError(ScanMatchError):
    """An inventory state transition is not allowed from the current state."""


class AlreadyReceivedError(PreconditionError):
    """Receive requested for a code that already has an inventory record."""


class NotReceivedError(PreconditionError):
    """Dispose requested for a code without an active inventory record."""


class RecognitionError(ScanMatchError):
    """The recognizer is unavailable or failed on a page."""


class ManifestReplaceNotConfirmed(ScanMatchError):
    """Replacing the expected set is destructive and must be confirmed."""
