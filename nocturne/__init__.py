"""Nocturne: idle-time cross-domain correlation engine for tracking infrastructure."""

__version__ = "0.1.0"
