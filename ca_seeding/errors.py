from __future__ import annotations


class SeedingError(Exception):
    """Base class for all errors raised by :mod:`ca_seeding`."""


class ConfigError(SeedingError, ValueError):
    """Invalid or unreadable seeding configuration."""


class SeedingInputError(SeedingError, ValueError):
    r"""
    Missing or malformed per-event input (geometry, clusters or vertex).

    The seeding driver treats this as fatal **for the event only**: the event
    is reported as aborted and nothing is emitted to the track sink.
    """


class GeometryConflictError(SeedingInputError):
    """Two geometry sources disagree on the radius of the same layer."""
