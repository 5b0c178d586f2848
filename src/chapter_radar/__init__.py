"""Multi-source chapter discovery and polling engine."""

__version__ = "0.1.0"
