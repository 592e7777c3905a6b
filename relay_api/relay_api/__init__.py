"""posrelay API: webhook ingestion, entitlements, alerts and the invalidation stream."""

__version__ = "0.1.0"
