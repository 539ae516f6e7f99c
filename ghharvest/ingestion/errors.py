"""Ingestion error types."""

from __future__ import annotations


class RepositoryMissingError(LookupError):
    """Raised when a commit job references a repository that is not stored."""

    def __init__(self, repository_id: int) -> None:
        """Record the missing repository id."""
        self.repository_id = repository_id
        super().__init__(f"Repository {repository_id} does not exist")


class RepositoryOwnerMissingError(LookupError):
    """Raised when a stored repository's owner row cannot be found."""

    def __init__(self, repository_id: int) -> None:
        """Record the repository whose owner is missing."""
        self.repository_id = repository_id
        super().__init__(f"Repository {repository_id} has no resolvable owner")


class AccountNotFoundError(LookupError):
    """Raised when a rescrape targets an account that is not stored."""

    def __init__(self, account_id: int) -> None:
        """Record the missing account id."""
        self.account_id = account_id
        super().__init__(f"Account {account_id} does not exist")
