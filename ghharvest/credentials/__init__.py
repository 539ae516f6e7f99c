"""Donated GitHub credentials and the broker that rotates them."""

from __future__ import annotations

from .broker import CredentialBroker
from .locks import (
    CredentialLock,
    InProcessCredentialLock,
    RowCredentialLock,
    build_credential_lock,
)
from .models import Credential, RateLimitState, Scope, scope_for_path

__all__ = [
    "Credential",
    "CredentialBroker",
    "CredentialLock",
    "InProcessCredentialLock",
    "RateLimitState",
    "RowCredentialLock",
    "Scope",
    "build_credential_lock",
    "scope_for_path",
]
