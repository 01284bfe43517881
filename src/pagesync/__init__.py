"""Bidirectional sync between a remote document tree and local files."""

__version__ = "0.1.0"
