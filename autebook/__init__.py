"""Incremental EPUB updater for serialized web novels."""

__version__ = "0.3.0"
