"""Task broker HTTP API."""

from taskbroker.api.router import router

__all__ = ["router"]
