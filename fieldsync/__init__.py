"""Resilient data synchronisation for the field operations dashboard."""

__version__ = "0.1.0"

__all__ = ["__version__"]
