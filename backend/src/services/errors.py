"""Exceptions raised by the shot detection pipeline."""


class ShotDetectionError(Exception):
    """Base class for pipeline errors."""


class UnreadableSourceError(ShotDetectionError):
    """The source video could not be probed, downloaded or decoded."""


class PoseModelError(ShotDetectionError):
    """The pose model could not be loaded."""


class JobTimeoutError(ShotDetectionError):
    """A job exceeded its wall-clock ceiling."""


class ProgressTransitionError(ShotDetectionError):
    """An illegal write to the progress store (stage regression, etc)."""
