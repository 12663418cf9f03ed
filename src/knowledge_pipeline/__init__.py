"""Collect, embed and index SDK knowledge through a durable job queue."""

__version__ = "0.1.0"
