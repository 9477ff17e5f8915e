"""Evidentia HTTP API."""
