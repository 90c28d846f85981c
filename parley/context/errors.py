"""Error taxonomy for context management.

Only ConfigurationError is fatal, and only at startup. CompactionFailure and
ExecutionFailure are raised by collaborators and converted into structured
outcomes by the orchestrator, so a turn always ends with a well-formed state.
"""

from __future__ import annotations


class ParleyError(Exception):
    """Base class for Parley errors."""


class ConfigurationError(ParleyError):
    """Inconsistent thresholds or sizes, rejected before any turn runs.

    Not a ValueError subclass, so pydantic validators let it propagate
    unwrapped out of Settings().
    """


class CompactionFailure(ParleyError):
    """The summarizer failed, timed out, or produced an empty digest."""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.cause = cause


class ExecutionFailure(ParleyError):
    """An executor could not run a part at all (spawn error, broken pipe)."""
