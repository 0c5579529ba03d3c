"""tierguard: priority-aware, multi-policy rate limiting."""

__version__ = "0.1.0"
