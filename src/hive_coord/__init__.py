"""Coordination substrate for cooperating worker processes."""

__version__ = "0.1.0"
