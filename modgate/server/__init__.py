"""FastAPI service exposing the gateway over HTTP."""

from .app import create_app, error_status

__all__ = ["create_app", "error_status"]
