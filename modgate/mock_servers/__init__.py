"""Mock CurseForge server for testing."""

from .app import MALFORMED, create_app, create_mock_app

__all__ = ["MALFORMED", "create_app", "create_mock_app"]
