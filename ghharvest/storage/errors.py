"""Storage-layer error types."""

from __future__ import annotations


class TimezoneAwareRequiredError(ValueError):
    """Raised when a naive datetime is bound to a UTC column."""

    def __init__(self, context: str) -> None:
        """Attach a consistent message for the failing context."""
        super().__init__(f"{context} must be timezone aware")

    @classmethod
    def for_column(cls) -> TimezoneAwareRequiredError:
        """Return an error for a naive value bound to a timestamp column."""
        return cls("timestamp column values")


class UnsupportedDialectError(RuntimeError):
    """Raised when bulk upserts are attempted on an unsupported database."""

    def __init__(self, dialect: str) -> None:
        """Record the dialect name for diagnostics."""
        self.dialect = dialect
        super().__init__(
            f"bulk upserts require postgresql or sqlite, got dialect {dialect!r}"
        )
