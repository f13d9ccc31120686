"""
Refresh Pipeline

Builds and persists one keyword's rank sheet.
"""

from .refresh import KeywordRefresher, RefreshOutcome, validate_rows

__all__ = [
    "KeywordRefresher",
    "RefreshOutcome",
    "validate_rows",
]
