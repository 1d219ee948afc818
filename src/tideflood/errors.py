# src/tideflood/errors.py
"""
Module: errors.py
Responsibilities:
- Define the error kinds raised by the flood-frequency core

All errors derive from ValueError so callers that already guard the analysis
functions with ``except ValueError`` keep working.
"""


class TideFloodError(ValueError):
    """Base class for tideflood analysis errors."""


class DataAlignmentError(TideFloodError):
    """Observed and predicted timestamps cannot be matched."""


class InsufficientDataError(TideFloodError):
    """A window or year falls below the hard completeness minimum."""


class ModelFitError(TideFloodError):
    """An AR or GLS fit failed or has too few samples for its order."""


class InvalidWindowSpecification(TideFloodError):
    """A window span or interval is malformed or mixes modes."""
