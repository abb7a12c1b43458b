"""Exception taxonomy for the grading core.

Input errors are fatal for a single queue item and feed the retry/failure
bookkeeping. Gateway errors are recoverable: callers either fall back to local
overlap scoring or count them as a retryable item failure. Transition errors
guard the queue and result state machines.
"""

from __future__ import annotations


class GradingError(Exception):
    """Base class for grading core failures."""


class InputError(GradingError, ValueError):
    """Submission or grading inputs are unusable."""


class EmptySubmissionError(InputError):
    """Student text is empty after trimming; never graded as zero."""


class EmptyAnswerKeyError(InputError):
    """The answer key yields no usable terms after normalization."""


class MissingAnswerKeyError(InputError):
    """Key-match grading was required but no answer key was supplied."""


class InvalidPayloadError(InputError):
    """A queued job payload is missing required fields."""


class GatewayError(GradingError):
    """The external grading gateway failed, timed out, or answered badly."""


class GatewayNotConfiguredError(GatewayError):
    """No gateway key is configured, so the gateway cannot be called."""


class GatewayDecodeError(GatewayError):
    """Gateway content could not be decoded into the expected shape."""


class QueueTransitionError(GradingError):
    """A queue item was asked to move out of a terminal or unclaimed state."""


class IllegalTransitionError(GradingError):
    """A result was released or rejected from a non-draft state."""


class RateLimitExceededError(GradingError):
    """An actor exceeded the allowed number of actions in the window."""


__all__ = [
    "EmptyAnswerKeyError",
    "EmptySubmissionError",
    "GatewayDecodeError",
    "GatewayError",
    "GatewayNotConfiguredError",
    "GradingError",
    "IllegalTransitionError",
    "InputError",
    "InvalidPayloadError",
    "MissingAnswerKeyError",
    "QueueTransitionError",
    "RateLimitExceededError",
]
