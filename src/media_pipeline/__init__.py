"""Asynchronous multi-stage media generation pipeline."""

__version__ = "0.3.0"
