"""depot: caching and distributed coordination over a shared key-value store."""

__version__ = "0.1.0"
