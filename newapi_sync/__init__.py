"""Declarative sync of upstream LLM gateway pricing into a new-api instance."""

__version__ = "0.1.0"
