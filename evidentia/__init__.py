"""Evidentia forensic log intake and analysis service."""

__version__ = "0.1.0"
