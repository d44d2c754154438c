"""Rate-limited, cached gateway to the CurseForge mod API."""

__version__ = "0.1.0"
