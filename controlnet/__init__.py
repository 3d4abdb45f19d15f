"""Control network runtime core."""

__version__ = "0.1.0"
