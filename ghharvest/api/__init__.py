"""Falcon ASGI surface: health probes, the GitHub proxy and trigger routes."""

from .app import AppDependencies, create_app

__all__ = ["AppDependencies", "create_app"]
