"""Client side of the invalidation relay: stream consumer, query cache and CLI."""

__version__ = "0.1.0"
