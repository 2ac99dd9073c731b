"""Kart Park backend: driver identity linking, race statistics and squadron points."""

__version__ = "0.1.0"
