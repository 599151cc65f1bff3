"""Error taxonomy for the analytics query layer.

Every failure reaches the caller as one of these types. Nothing is
swallowed and nothing defaults to an empty result.
"""

from __future__ import annotations
from typing import List, Optional, Sequence


class AnalyticsError(Exception):
    """Base class for all errors raised by this package."""


class ValidationError(AnalyticsError):
    """Bad caller input. Always raised before any store I/O."""

    def __init__(self, message: str, fields: Optional[Sequence[str]] = None):
        super().__init__(message)
        self.fields: List[str] = list(fields or [])


class CompilationError(AnalyticsError):
    """An unknown field/operator combination reached the compiler (programmer error)."""


class StoreError(AnalyticsError):
    """The store failed or could not be reached. Not retried here."""


class SchemaMismatchError(AnalyticsError):
    """A row returned by the store does not match the declared result schema."""

    def __init__(self, message: str, row_index: int):
        super().__init__(message)
        self.row_index = row_index
