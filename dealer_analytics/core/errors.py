"""
Error taxonomy for the report pipeline.

Every failure that can reach a report caller is classified into one of three
kinds as close to its origin as possible:

- ValidationError: malformed or contradictory filter input (HTTP 400).
  Raised by the scope builder; the message is shown to the caller.
- ConfigurationError: a report is wired incorrectly (unknown field path,
  cyclic metric dependency, non-exhaustive score bands). Raised by the
  composer, the derivation engine and the scoring engine (HTTP 500).
- DatabaseError: the data store failed or timed out (HTTP 500). Raised by
  the repository. Reads are idempotent, so callers may retry.

The envelope formatter only accepts ReportError instances; raw driver
exceptions never cross the API boundary.
"""

from typing import Any, Dict, Optional

from dealer_analytics.models.enums import ErrorKind


class ReportError(Exception):
    """Base class for all classified report pipeline errors."""

    kind: ErrorKind = ErrorKind.CONFIGURATION
    http_status: int = 500
    # Whether the message may be shown to the caller as-is
    expose_message: bool = False

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error_type": self.__class__.__name__,
            "kind": self.kind.value,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(ReportError):
    """Malformed or contradictory filter input supplied by the caller."""

    kind = ErrorKind.VALIDATION
    http_status = 400
    expose_message = True


class ConfigurationError(ReportError):
    """A report pipeline is wired incorrectly. Indicates a bug, not bad data."""

    kind = ErrorKind.CONFIGURATION
    http_status = 500


class DatabaseError(ReportError):
    """The aggregation step failed or timed out at the data store."""

    kind = ErrorKind.DATABASE
    http_status = 500

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        timed_out: bool = False,
    ) -> None:
        super().__init__(message, details)
        self.timed_out = timed_out


__all__ = [
    "ReportError",
    "ValidationError",
    "ConfigurationError",
    "DatabaseError",
]
