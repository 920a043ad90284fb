"""Quota-aware job application engine."""

__version__ = "1.0.0"
