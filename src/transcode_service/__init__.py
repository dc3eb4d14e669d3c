"""Asynchronous video transcode service."""

__version__ = "0.1.0"
