"""Tramoya: queued execution of declarative browser test scenarios."""

__version__ = "0.1.0"
