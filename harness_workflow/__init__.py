"""Durable, file-backed workflow orchestration for AI coding sessions."""

__version__ = "0.1.0"
