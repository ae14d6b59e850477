"""Assistant Core: conversational response pipeline with layered caching and tool routing."""

__version__ = "0.1.0"
