"""
Exceptions raised by the matching engine.

Quota denials and missing listing attributes are not errors and never
surface here.
"""


class ValidationError(ValueError):
    """Malformed input rejected at the boundary (preferences, interaction type, plan)."""


class OwnershipError(PermissionError):
    """A dealer referenced a record that belongs to another dealer."""


class MatchNotFoundError(LookupError):
    """No vehicle match exists with the requested id."""


class LearnerUpdateError(RuntimeError):
    """A learned profile could not be stored; the interaction itself is kept."""
