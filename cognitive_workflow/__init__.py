"""Cognitive workflow engine: intent routing and graph execution of AI-backed workflows."""

__version__ = "1.0.0"
