"""Authenticated GitHub read proxy."""

from .resources import ProxyResource

__all__ = ["ProxyResource"]
