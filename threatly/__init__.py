"""Threatly: LLM alert classification for threat intelligence articles."""

__version__ = "0.1.0"
