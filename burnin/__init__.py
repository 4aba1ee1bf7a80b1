"""Aging-test (burn-in) protocol execution engine."""

__version__ = "0.1.0"
