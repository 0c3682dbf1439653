"""Recurring billing and dunning engine."""

__version__ = "0.1.0"
