"""Error taxonomy for the classification-and-learning core.

Every error here is recovered inside the library; none is meant to reach a
caller of SiftEngine. They exist so recovery paths can be named, logged and
tested.
"""


class SnapSiftError(Exception):
    """Base class for snapsift errors."""


class DecodeUnavailable(SnapSiftError):
    """No usable pixel data; extraction degrades to neutral features."""


class PersistenceCorrupt(SnapSiftError):
    """Stored bytes could not be parsed; state resets to defaults."""


class BoundsViolationInternal(SnapSiftError):
    """A threshold was found outside its [min, max] bound; it is clamped."""

    def __init__(self, dimension: str, value: float, minimum: float, maximum: float):
        super().__init__(f"{dimension}={value!r} outside [{minimum}, {maximum}]")
        self.dimension = dimension
        self.value = value
        self.minimum = minimum
        self.maximum = maximum


class ConcurrentWriteRetry(SnapSiftError):
    """A writer lost the race for a critical section and will retry."""
