"""Tollgate - quality-gated release pipeline controller."""

__version__ = "1.0.0"
