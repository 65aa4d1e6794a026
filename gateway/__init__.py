"""Connect gateway: relay third-party API calls on behalf of connected accounts."""

from __future__ import annotations

from typing import Any

from .config import GatewaySettings, load_settings
from .routing import EndpointResolver, resolve_endpoint


def create_app(*args: Any, **kwargs: Any):
    """Factory function that returns the gateway ASGI application."""

    from .api import create_app as _create_app

    return _create_app(*args, **kwargs)


__all__ = [
    "EndpointResolver",
    "GatewaySettings",
    "create_app",
    "load_settings",
    "resolve_endpoint",
]
