"""Pilot feature flag service: evaluation engine with a read-through cache."""

__version__ = "1.0.0"
