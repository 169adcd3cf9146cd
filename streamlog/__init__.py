"""Segmented append-only log storage with index files, offsets, retention and generation state."""

__version__ = "0.1.0"