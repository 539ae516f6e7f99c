"""Broker configuration for the ghharvest Dramatiq actors.

Actors are declared at import time, which binds them to whatever broker is
current, so :func:`ensure_broker_configured` runs before any actor is
defined.
"""

from __future__ import annotations

import os
import sys
import threading

import dramatiq
from dramatiq.brokers.stub import StubBroker

from ghharvest.common.env import env_bool

_BROKER_LOCK = threading.Lock()
_broker_configured = False


def _is_running_tests() -> bool:
    """Return True when the process runs under pytest or pytest-xdist."""
    return "pytest" in sys.modules or any(
        key in os.environ
        for key in ["PYTEST_CURRENT_TEST", "PYTEST_XDIST_WORKER", "PYTEST_ADDOPTS"]
    )


def _should_use_stub_broker() -> bool:
    """Return True if ``GHHARVEST_ALLOW_STUB_BROKER`` is set or under tests."""
    return (
        env_bool("GHHARVEST_ALLOW_STUB_BROKER", default=False) or _is_running_tests()
    )


def ensure_broker_configured() -> None:
    """Ensure a Dramatiq broker is configured.

    Thread-safe and idempotent. A StubBroker is installed when no broker is
    configured and stubs are allowed; otherwise the existing broker is kept.

    Raises
    ------
    RuntimeError
        If no broker is configured and we're not in a test/stub-allowed context.

    """
    global _broker_configured

    if _broker_configured:
        return

    with _BROKER_LOCK:
        if _broker_configured:
            return

        if _should_use_stub_broker():
            current_broker = None
        else:
            try:
                current_broker = dramatiq.get_broker()
            except (ImportError, LookupError):
                # ImportError: the default RabbitMQ broker's client is missing
                current_broker = None

        if current_broker is None:
            if _should_use_stub_broker():
                dramatiq.set_broker(StubBroker())
            else:  # pragma: no cover - guard for prod misconfigurations
                message = (
                    "No Dramatiq broker configured. "
                    "Set GHHARVEST_ALLOW_STUB_BROKER=1 for "
                    "local/test runs or configure a real broker."
                )
                raise RuntimeError(message)

        _broker_configured = True
