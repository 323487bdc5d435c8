"""lazy: runs code-analysis engines in docker and routes traffic to them."""

__version__ = "1.0.0"
