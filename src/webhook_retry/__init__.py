"""Durable webhook delivery with a fixed backoff table."""

__version__ = "0.1.0"
