"""Exception types raised by the matching core."""

from __future__ import annotations


class MatchError(Exception):
    """Base class for matching failures."""


class MatchConfigError(MatchError, ValueError):
    """Invalid configuration; raised before any rows are read."""


class MatchResourceError(MatchError):
    """The run ran out of resources (typically memory for the bin index)."""
