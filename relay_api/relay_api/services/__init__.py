"""Service layer: webhook processing, entitlements, alerts and the invalidation relay."""
