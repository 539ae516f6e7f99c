"""httpx-based client for the GitHub REST API.

The client is credential-agnostic: every call takes the token to present, and
:class:`~ghharvest.credentials.broker.CredentialBroker` decides which one that
is. Non-success responses are classified into the error hierarchy in
:mod:`ghharvest.github.errors` here so the broker and gateway only ever see
typed failures.
"""

from __future__ import annotations

import typing as typ
from http import HTTPStatus

import httpx

from .config import GitHubConfig
from .errors import (
    CredentialInvalid,
    NotFound,
    RateLimitExceeded,
    TakedownUnavailable,
    UpstreamError,
)
from .payloads import RateLimitPayload, convert_payload

if typ.TYPE_CHECKING:
    from ghharvest.common.ratelimits import RateLimitState, Scope

_HTTP_ERROR_STATUS_THRESHOLD = 400
_RATE_LIMIT_MARKER = "rate limit"
_API_VERSION = "2022-11-28"


def _decode_body(response: httpx.Response) -> typ.Any:  # noqa: ANN401
    """Return the JSON body, or the raw text when it is not JSON."""
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _mentions_rate_limit(response: httpx.Response, body: object) -> bool:
    if response.headers.get("x-ratelimit-remaining") == "0":
        return True
    message = body.get("message") if isinstance(body, dict) else body
    return isinstance(message, str) and _RATE_LIMIT_MARKER in message.lower()


def _is_commit_listing(path: str) -> bool:
    return "/commits" in f"/{path.lstrip('/')}"


def classify_response(response: httpx.Response, path: str) -> typ.Any:  # noqa: ANN401
    """Return the decoded body of ``response`` or raise its typed error.

    Parameters
    ----------
    response
        Response to classify.
    path
        Request path, used for error messages and the empty-repository rule.

    Returns
    -------
    Any
        Decoded JSON body. A 409 on a commit listing, which GitHub sends for
        empty repositories, is returned as an empty list.

    Raises
    ------
    NotFound
        For 404 responses.
    CredentialInvalid
        For 401 responses.
    RateLimitExceeded
        For 403 responses reporting an exhausted budget.
    TakedownUnavailable
        For 451 responses.
    UpstreamError
        For every other non-2xx response.

    """
    status = response.status_code
    body = _decode_body(response)
    if status < _HTTP_ERROR_STATUS_THRESHOLD:
        return body

    match status:
        case HTTPStatus.NOT_FOUND:
            raise NotFound.for_path(path, body)
        case HTTPStatus.UNAUTHORIZED:
            raise CredentialInvalid.for_path(path, body)
        case HTTPStatus.FORBIDDEN if _mentions_rate_limit(response, body):
            raise RateLimitExceeded.for_path(path, body)
        case HTTPStatus.CONFLICT if _is_commit_listing(path):
            return []
        case HTTPStatus.UNAVAILABLE_FOR_LEGAL_REASONS:
            raise TakedownUnavailable.for_path(path, body)
        case _:
            raise UpstreamError.http_error(status, path, body)


class UpstreamClient:
    """Thin async wrapper over the GitHub REST API.

    Parameters
    ----------
    config
        Base URL, timeout and user agent. Defaults to :class:`GitHubConfig`.
    http_client
        Optional pre-built client; tests inject one backed by
        ``httpx.MockTransport``. Clients passed in are not closed by
        :meth:`aclose`.

    """

    def __init__(
        self,
        config: GitHubConfig | None = None,
        *,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialise the client with the provided API configuration."""
        self._config = config or GitHubConfig()
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=self._config.timeout_s,
        )

    @property
    def config(self) -> GitHubConfig:
        """Return the active configuration."""
        return self._config

    async def aclose(self) -> None:
        """Close any owned HTTP resources."""
        if self._owns_client:
            await self._client.aclose()

    def _url(self, path: str) -> str:
        return f"{self._config.api_url}/{path.lstrip('/')}"

    def _headers(self, token: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "User-Agent": self._config.user_agent,
            "X-GitHub-Api-Version": _API_VERSION,
        }

    async def get(
        self,
        path: str,
        params: typ.Mapping[str, typ.Any] | None = None,
        *,
        token: str,
    ) -> typ.Any:  # noqa: ANN401
        """Issue ``GET path`` with ``token`` and return the classified body."""
        response = await self._client.get(
            self._url(path),
            params=dict(params or {}),
            headers=self._headers(token),
        )
        return classify_response(response, path)

    async def post(
        self,
        path: str,
        payload: typ.Mapping[str, typ.Any],
        *,
        token: str,
    ) -> typ.Any:  # noqa: ANN401
        """Issue ``POST path`` with a JSON body and return the classified body."""
        response = await self._client.post(
            self._url(path),
            json=dict(payload),
            headers=self._headers(token),
        )
        return classify_response(response, path)

    async def rate_limit(self, *, token: str) -> dict[Scope, RateLimitState]:
        """Return the authoritative budgets of ``token`` for every scope.

        ``GET /rate_limit`` does not count against any budget.
        """
        body = await self.get("rate_limit", token=token)
        payload = convert_payload(body, RateLimitPayload, field="rate_limit")
        return payload.states()
