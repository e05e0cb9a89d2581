"""
errors.py — Exceptions raised by the store and the timing engine.

Routes translate these to HTTP status codes (404 / 400 / 409).
"""

from __future__ import annotations


class TimingError(Exception):
    """Base exception for all KartTiming core errors."""


class NotFoundError(TimingError):
    """Unknown transponder, kart or session id."""


class InvalidArgumentError(TimingError):
    """Malformed status, missing field, duplicate kart number/transponder."""


class InvalidStateError(TimingError):
    """Operation not allowed in the current session state."""
