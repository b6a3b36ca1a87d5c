"""
Backend error hierarchy.

Construction failures (bad config, unsupported family or dtype, missing
weights, incompatible accelerator) are ``StartError`` and are fatal.
Per-call failures are ``InferenceError``; the backend stays usable after one.
"""


class BackendError(Exception):
    """Base class for every error surfaced by the backend."""


class StartError(BackendError):
    """The backend could not be constructed."""


class InferenceError(BackendError):
    """A single embed/predict call failed."""


class UnsupportedOperationError(InferenceError):
    """The loaded model variant does not implement the requested operation."""


class InvalidBatchError(InferenceError):
    """A packed batch violates its offset or index invariants."""


class MissingWeightError(KeyError):
    """A tensor is absent from the checkpoint or has the wrong shape."""

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the message readable
        return str(self.args[0]) if self.args else ""
