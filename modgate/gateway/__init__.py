"""Gateway facade and CLI."""

from .orchestrator import ModGateway

__all__ = ["ModGateway"]
