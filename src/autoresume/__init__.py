"""Automatic recovery of interactive CLI sessions after usage-quota suspensions."""

__version__ = "0.1.0"

__all__ = ["__version__"]
