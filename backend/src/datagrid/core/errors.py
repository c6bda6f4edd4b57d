"""Error taxonomy shared by the data table client and its transports."""

from typing import Optional


class DataGridError(Exception):
    """Base class for all data grid errors."""


class TransportError(DataGridError):
    """A fetch or network call failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CommitValidationError(TransportError):
    """The remote endpoint rejected an edit."""


class CancelledRequest(DataGridError):
    """A request was superseded by a newer one before it resolved."""


class MisconfigurationError(DataGridError):
    """The table has neither a transport nor a static data collection."""


class PersistenceError(DataGridError):
    """Local or session storage is unavailable (denied, quota, private mode)."""
