"""Shared error types for resilience_core."""


class ResilienceError(Exception):
    """Base exception for the resilience_core package."""


class TransientError(RuntimeError):
    """Generic retry-safe transient dependency failure."""
