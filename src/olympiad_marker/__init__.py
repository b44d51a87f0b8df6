"""Batch olympiad paper marking against an LLM scoring oracle."""

__version__ = "0.1.0"
