"""Error taxonomy for remote generation calls."""

from __future__ import annotations


class GenerationError(Exception):
    """Base class for failures raised by a generation job."""


class TransientRemoteError(GenerationError):
    """Network or server-side failure."""


class PermanentRequestError(GenerationError):
    """The remote side rejected the request input."""


class MissingResultError(GenerationError):
    """A terminal success response carried no usable result."""


class PollTimeout(GenerationError):
    """Polling gave up before the remote job reached a terminal state.

    The remote job may still finish server-side, so the outcome is unknown
    rather than failed.
    """

    def __init__(self, entity_id: str, attempts: int) -> None:
        super().__init__(f"Polling for {entity_id} stopped after {attempts} attempts")
        self.entity_id = entity_id
        self.attempts = attempts
