"""
Exception types for the gateway.

Per-request outcomes (blocked input, exhausted budget, low-quality output)
are verdicts, not exceptions. Exceptions are reserved for faults that must
surface at startup or in the external counter store.
"""

from __future__ import annotations


class PostguardError(Exception):
    """Base exception for all postguard errors."""


class ConfigurationError(PostguardError):
    """Malformed pattern tables, unknown tiers, invalid limits or clocks."""


class StoreUnavailableError(PostguardError):
    """The external rate-limit counter store could not be reached."""
