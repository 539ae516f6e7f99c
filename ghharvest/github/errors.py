"""Errors raised while talking to the GitHub REST API."""

from __future__ import annotations

import typing as typ

from ghharvest.common.ratelimits import Scope  # noqa: TC001


class GatewayError(RuntimeError):
    """Base class for every failure surfaced by the gateway."""


class UpstreamError(GatewayError):
    """Raised when GitHub answers with a non-success status.

    Attributes
    ----------
    status_code
        HTTP status GitHub returned.
    body
        Decoded JSON body when available, otherwise the raw text.

    """

    def __init__(
        self, message: str, *, status_code: int, body: typ.Any = None  # noqa: ANN401
    ) -> None:
        """Initialise with a message, status code and upstream body."""
        self.status_code = status_code
        self.body = body
        super().__init__(message)

    @classmethod
    def http_error(
        cls, status_code: int, path: str, body: typ.Any = None  # noqa: ANN401
    ) -> UpstreamError:
        """Return an error for a non-2xx response to ``path``."""
        return cls(
            f"GitHub HTTP {status_code} for {path}", status_code=status_code, body=body
        )

    @classmethod
    def graphql_errors(cls, errors: object) -> UpstreamError:
        """Return an error for a GraphQL response carrying `errors`."""
        return cls(f"GitHub GraphQL errors: {errors}", status_code=502, body=errors)

    @classmethod
    def retries_exhausted(cls, attempts: int) -> UpstreamError:
        """Return an error once every credential tried was rejected."""
        return cls(
            f"GitHub rejected {attempts} credentials in a row", status_code=401
        )


class NotFound(UpstreamError):
    """Raised for HTTP 404; the resource does not exist or is hidden."""

    @classmethod
    def for_path(cls, path: str, body: typ.Any = None) -> NotFound:  # noqa: ANN401
        """Return an error for a missing resource."""
        return cls(f"GitHub resource not found: {path}", status_code=404, body=body)


class RateLimitExceeded(UpstreamError):
    """Raised for HTTP 403 responses that report an exhausted budget."""

    @classmethod
    def for_path(
        cls, path: str, body: typ.Any = None  # noqa: ANN401
    ) -> RateLimitExceeded:
        """Return an error for a rate-limited request."""
        return cls(f"GitHub rate limit exceeded for {path}", status_code=403, body=body)


class TakedownUnavailable(UpstreamError):
    """Raised for HTTP 451; the content is unavailable for legal reasons."""

    @classmethod
    def for_path(
        cls, path: str, body: typ.Any = None  # noqa: ANN401
    ) -> TakedownUnavailable:
        """Return an error for a resource under takedown."""
        return cls(
            f"GitHub resource unavailable for legal reasons: {path}",
            status_code=451,
            body=body,
        )


class CredentialInvalid(UpstreamError):
    """Raised for HTTP 401; the token was revoked or expired."""

    @classmethod
    def for_path(
        cls, path: str, body: typ.Any = None  # noqa: ANN401
    ) -> CredentialInvalid:
        """Return an error for a rejected token."""
        return cls(f"GitHub rejected credential for {path}", status_code=401, body=body)


class NoAvailableCredentials(GatewayError):
    """Raised when no active credential has budget left in a scope."""

    def __init__(self, scope: Scope) -> None:
        """Record the exhausted scope."""
        self.scope = scope
        super().__init__(f"No credential has {scope.value} budget available")


class GitHubResponseShapeError(GatewayError):
    """Raised when GitHub responses are missing expected fields."""

    @classmethod
    def missing(cls, field: str) -> GitHubResponseShapeError:
        """Return an error for a missing response field."""
        return cls(f"GitHub response missing expected field: {field}")

    @classmethod
    def unexpected(cls, path: str, kind: str) -> GitHubResponseShapeError:
        """Return an error for a payload of the wrong JSON type."""
        return cls(f"GitHub response for {path} was {kind}, expected a list")


class GitHubConfigError(RuntimeError):
    """Raised when GitHub client configuration is invalid."""

    @classmethod
    def invalid_url(cls, value: str) -> GitHubConfigError:
        """Return an error for an unusable API base URL."""
        return cls(f"GHHARVEST_GITHUB_API_URL must be an http(s) URL, got: {value!r}")

    @classmethod
    def invalid_lock_mode(cls, value: str) -> GitHubConfigError:
        """Return an error for an unknown credential lock mode."""
        return cls(
            f"GHHARVEST_CREDENTIAL_LOCK must be 'process' or 'row', got: {value!r}"
        )
