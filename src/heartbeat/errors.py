"""Exception hierarchy for the heartbeat pipeline.

Only conditions that end a monitoring session or cross the HTTP boundary are
exceptions.  Suppressed-by-design results (cooldown, unchanged bpm, no
followers) are ``DispatchOutcome`` values, never errors.
"""

from __future__ import annotations


class PulsecastError(Exception):
    """Base class for all Pulsecast errors."""


class SensorUnavailableError(PulsecastError):
    """The platform reports the heart-rate sensor as unavailable."""


class SensorPermissionDeniedError(PulsecastError):
    """The user denied access to heart-rate data."""


class SessionStartError(PulsecastError):
    """The acquisition session could not be opened."""


class InvalidEnvelopeError(PulsecastError):
    """A relay envelope is malformed or missing required fields."""


class RankingCacheUnavailableError(PulsecastError):
    """The sorted-set cache could not be reached."""
