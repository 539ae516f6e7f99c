"""Credential pool types.

:class:`RateLimitState` and :class:`Scope` are pure values shared with the
GitHub client; :class:`Credential` is the persisted row they describe.
"""

from __future__ import annotations

from ghharvest.common.ratelimits import RateLimitState, Scope, scope_for_path
from ghharvest.storage.models import Credential

__all__ = ["Credential", "RateLimitState", "Scope", "scope_for_path"]
