"""Safee Core: approval workflows and document envelope encryption."""

__version__ = "0.3.0"
