"""Typed views over the GitHub REST payloads the pipeline consumes.

Only the fields that are persisted are declared; everything else GitHub sends
is ignored during conversion. Timestamps stay as strings here and are parsed
when rows are built so a malformed value fails the item, not the page.
"""

from __future__ import annotations

import typing as typ

import msgspec

from ghharvest.common.ratelimits import RateLimitState, Scope
from ghharvest.common.time import from_epoch, parse_github_datetime

from .errors import GitHubResponseShapeError

ORGANIZATION_TYPE = "Organization"


class UserPayload(msgspec.Struct, kw_only=True):
    """Profile returned by ``GET /users/{login}``."""

    id: int
    login: str
    type: str = "User"
    name: str | None = None
    email: str | None = None
    bio: str | None = None
    location: str | None = None
    company: str | None = None
    blog: str | None = None
    twitter_username: str | None = None
    avatar_url: str | None = None
    public_repos: int | None = None
    public_gists: int | None = None
    followers: int | None = None
    following: int | None = None
    created_at: str | None = None
    updated_at: str | None = None

    @property
    def is_organization(self) -> bool:
        """Return True when the login belongs to an organization."""
        return self.type == ORGANIZATION_TYPE

    def to_row(self) -> dict[str, typ.Any]:
        """Return the ``accounts`` columns for this profile."""
        return {
            "github_id": self.id,
            "login": self.login,
            "name": self.name,
            "email": self.email,
            "bio": self.bio,
            "location": self.location,
            "company": self.company,
            "blog": self.blog,
            "twitter_username": self.twitter_username,
            "avatar_url": self.avatar_url,
            "public_repos": self.public_repos,
            "public_gists": self.public_gists,
            "followers": self.followers,
            "following": self.following,
            "github_created_at": parse_github_datetime(self.created_at),
            "github_updated_at": parse_github_datetime(self.updated_at),
        }


class OrganizationPayload(msgspec.Struct, kw_only=True):
    """Entry returned by ``GET /users/{login}/orgs``."""

    id: int
    login: str
    description: str | None = None
    avatar_url: str | None = None

    def to_row(self) -> dict[str, typ.Any]:
        """Return the ``organizations`` columns for this entry."""
        return {
            "github_id": self.id,
            "login": self.login,
            "description": self.description,
            "avatar_url": self.avatar_url,
        }


class OwnerPayload(msgspec.Struct, kw_only=True):
    """Owner stub embedded in repository payloads."""

    id: int
    login: str
    type: str = "User"


class RepositoryPayload(msgspec.Struct, kw_only=True):
    """Entry returned by the user and organization repository listings."""

    id: int
    name: str
    full_name: str | None = None
    owner: OwnerPayload | None = None
    fork: bool = False
    description: str | None = None
    homepage: str | None = None
    language: str | None = None
    topics: list[str] = msgspec.field(default_factory=list)
    default_branch: str | None = None
    stargazers_count: int = 0
    forks_count: int = 0
    watchers_count: int = 0
    open_issues_count: int = 0
    size: int = 0
    archived: bool = False
    disabled: bool = False
    created_at: str | None = None
    updated_at: str | None = None
    pushed_at: str | None = None

    def to_row(
        self,
        *,
        owner_account_id: int | None = None,
        owner_organization_id: int | None = None,
    ) -> dict[str, typ.Any]:
        """Return the ``repositories`` columns with exactly one owner set."""
        return {
            "github_id": self.id,
            "name": self.name,
            "full_name": self.full_name,
            "owner_account_id": owner_account_id,
            "owner_organization_id": owner_organization_id,
            "description": self.description,
            "homepage": self.homepage,
            "language": self.language,
            "topics": list(self.topics),
            "default_branch": self.default_branch,
            "stargazers_count": self.stargazers_count,
            "forks_count": self.forks_count,
            "watchers_count": self.watchers_count,
            "open_issues_count": self.open_issues_count,
            "size": self.size,
            "archived": self.archived,
            "disabled": self.disabled,
            "github_created_at": parse_github_datetime(self.created_at),
            "github_updated_at": parse_github_datetime(self.updated_at),
            "pushed_at": parse_github_datetime(self.pushed_at),
        }


class CommitAuthorPayload(msgspec.Struct, kw_only=True):
    """GitHub account linked to a commit, when GitHub could resolve one."""

    id: int | None = None
    login: str | None = None

    @property
    def is_resolved(self) -> bool:
        """Return True when both the external id and login are present."""
        return self.id is not None and bool(self.login)


class GitSignaturePayload(msgspec.Struct, kw_only=True):
    """Raw git author or committer signature."""

    name: str | None = None
    email: str | None = None
    date: str | None = None


class GitCommitPayload(msgspec.Struct, kw_only=True):
    """The ``commit`` object nested in a commit listing entry."""

    message: str | None = None
    author: GitSignaturePayload | None = None
    committer: GitSignaturePayload | None = None


class CommitPayload(msgspec.Struct, kw_only=True):
    """Entry returned by ``GET /repos/{owner}/{name}/commits``."""

    sha: str
    commit: GitCommitPayload | None = None
    author: CommitAuthorPayload | None = None

    @property
    def committed_at(self) -> str | None:
        """Return the committer date, falling back to the author date."""
        if self.commit is None:
            return None
        for signature in (self.commit.committer, self.commit.author):
            if signature is not None and signature.date:
                return signature.date
        return None


class RateLimitBucketPayload(msgspec.Struct, kw_only=True):
    """One bucket from ``GET /rate_limit``."""

    remaining: int
    reset: int
    limit: int | None = None
    used: int | None = None

    def to_state(self) -> RateLimitState:
        """Return the bucket as a :class:`RateLimitState`."""
        return RateLimitState(remaining=self.remaining, reset_at=from_epoch(self.reset))


class RateLimitPayload(msgspec.Struct, kw_only=True):
    """Body of ``GET /rate_limit``."""

    resources: dict[str, RateLimitBucketPayload]

    def states(self) -> dict[Scope, RateLimitState]:
        """Return the known scopes mapped to their current budgets."""
        return {
            scope: self.resources[scope.value].to_state()
            for scope in Scope
            if scope.value in self.resources
        }


def convert_payload[T](payload: object, payload_type: type[T], *, field: str) -> T:
    """Convert a decoded JSON value into ``payload_type``.

    Raises
    ------
    GitHubResponseShapeError
        If the value does not match the expected shape.

    """
    try:
        return msgspec.convert(payload, type=payload_type)
    except msgspec.ValidationError as exc:
        raise GitHubResponseShapeError.missing(f"{field}: {exc}") from exc
