"""Caching proxy for remote images."""

from .app import create_app
from .proxy import ImageProxy
from .settings import ProxySettings

__all__ = ["ImageProxy", "ProxySettings", "create_app"]
