"""Core of the posrelay consistency relay: state store, event contracts, invalidation routing."""

__version__ = "0.1.0"
