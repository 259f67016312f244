"""Incremental semantic-search knowledge-base indexer."""

__version__ = "0.1.0"
