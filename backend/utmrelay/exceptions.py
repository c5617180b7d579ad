"""Relay exception hierarchy.

Store conflicts are not exceptions (inserts report "not created") and
unparseable chat text is not an exception (the parser returns None). What
remains is rejected input, unknown sales, and downstream API failures.
"""

from typing import Optional


class RelayError(Exception):
    """Base exception for the relay."""
    pass


class ValidationError(RelayError):
    """A mandatory identifier is missing or a value cannot be interpreted."""
    pass


class SaleNotFoundError(RelayError):
    """Raised when a dispatch is requested for an unknown sale_code."""

    def __init__(self, sale_code: str):
        super().__init__(f"Sale not found: {sale_code}")
        self.sale_code = sale_code


class ConversionAPIError(RelayError):
    """An ad platform or aggregator rejected the request or was unreachable."""

    def __init__(self, platform: str, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.platform = platform
        self.status_code = status_code
