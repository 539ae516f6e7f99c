"""Rate-limit scopes and per-scope budget snapshots."""

from __future__ import annotations

import dataclasses
import datetime as dt
import enum


class Scope(enum.StrEnum):
    """Independent upstream rate-limit buckets."""

    CORE = "core"
    SEARCH = "search"
    GRAPHQL = "graphql"


@dataclasses.dataclass(frozen=True, slots=True)
class RateLimitState:
    """Remaining budget and reset time for one credential in one scope.

    ``remaining`` is a prediction refreshed after each use, not ground truth.
    A budget whose ``reset_at`` has passed is treated as available even when
    the stored counter reads zero.
    """

    remaining: int | None = None
    reset_at: dt.datetime | None = None

    def has_capacity(self, now: dt.datetime) -> bool:
        """Return True when the budget can serve at least one more call."""
        if self.remaining is not None and self.remaining > 0:
            return True
        return self.reset_at is not None and self.reset_at < now

    def spend(self) -> RateLimitState:
        """Return the state after one call when no authoritative read exists."""
        if self.remaining is None:
            return self
        return dataclasses.replace(self, remaining=max(self.remaining - 1, 0))


def scope_for_path(path: str) -> Scope:
    """Map a request path to its rate-limit scope.

    Examples
    --------
    >>> scope_for_path("users/foo")
    <Scope.CORE: 'core'>
    >>> scope_for_path("/search/users")
    <Scope.SEARCH: 'search'>

    """
    normalised = path.lstrip("/")
    if normalised.startswith("search"):
        return Scope.SEARCH
    if normalised.startswith("graphql"):
        return Scope.GRAPHQL
    return Scope.CORE
