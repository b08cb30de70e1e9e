"""LLM agent runtime for generating, verifying and repairing unit tests."""

__version__ = "0.1.0"
