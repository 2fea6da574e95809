"""Streaming chat orchestration with tool-call continuation."""

__version__ = "0.1.0"
