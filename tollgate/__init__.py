"""Tollgate: API key and upstream token lifecycle gateway."""

__version__ = "0.1.0"
