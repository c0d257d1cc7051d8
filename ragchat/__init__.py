"""Retrieval-augmented chat service for a single content site."""

__version__ = "0.1.0"
