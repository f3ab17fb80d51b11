"""
Errors raised by the CTSSpy clustering core.

Every error can carry the sample, cluster and stage it refers to, so that a
failed run reports where it failed rather than just that it failed.
"""

from typing import Optional


class CTSSpyError(Exception):
    """Base class for CTSSpy errors."""

    def __init__(self, message: str, sample: Optional[str] = None,
                 cluster: Optional[int] = None, stage: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.sample = sample
        self.cluster = cluster
        self.stage = stage

    def __str__(self):
        context = []
        if self.stage is not None:
            context.append(f"stage={self.stage}")
        if self.sample is not None:
            context.append(f"sample={self.sample}")
        if self.cluster is not None:
            context.append(f"cluster={self.cluster}")
        if not context:
            return self.message
        return f"[{', '.join(context)}] {self.message}"

    def __reduce__(self):
        # keep context when errors travel back from worker processes
        return (self.__class__, (self.message, self.sample, self.cluster, self.stage))


class ConfigurationError(CTSSpyError):
    """Invalid threshold, quantile or distance settings."""


class DataError(CTSSpyError):
    """A sample or cluster lacks usable signal for the requested operation."""


class ExecutionError(CTSSpyError):
    """A per-sample worker task failed."""
