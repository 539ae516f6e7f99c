"""Health probe resources."""

from .resources import HealthResource, ReadyResource

__all__ = ["HealthResource", "ReadyResource"]
