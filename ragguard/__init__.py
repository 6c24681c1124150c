"""Retrieval-and-verification core for a supportive chat assistant."""

__version__ = "1.0.0"
