"""
errors.py — error taxonomy shared by every pipeline stage.

Each stage raises one of these unchanged up the pipeline; only the HTTP
boundary (server.py) turns them into status codes, keyed on `kind`.

  InvalidInput       caller error, never retried
    InvalidMediaType   image type outside the allow-list
    PayloadTooLarge    image over the byte ceiling
    RejectedInput      upstream refused the input (4xx-equivalent)
  Overloaded         Gate wait queue full — retry later
  Timeout            deadline exceeded, or retries exhausted on timeouts
  UpstreamError      retries exhausted on 5xx / network failures
  NotFound           exact catalog lookup missed
  ConfigurationError wiring problem detected at startup
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for every error the pipeline surfaces to its callers."""

    kind = "pipeline_error"


class InvalidInput(PipelineError):
    kind = "invalid_input"


class InvalidMediaType(InvalidInput):
    kind = "invalid_media_type"


class PayloadTooLarge(InvalidInput):
    kind = "payload_too_large"


class RejectedInput(InvalidInput):
    kind = "rejected_input"


class Overloaded(PipelineError):
    kind = "overloaded"


class Timeout(PipelineError):
    kind = "timeout"


class UpstreamError(PipelineError):
    kind = "upstream_error"


class NotFound(PipelineError):
    kind = "not_found"


class ConfigurationError(PipelineError):
    kind = "configuration_error"


class TransientFailure(Exception):
    """
    Raised by provider adapters for failures worth retrying (timeouts,
    connection drops, 429, 5xx). Never escapes the Inference Gate.
    """

    def __init__(self, message: str, timed_out: bool = False):
        super().__init__(message)
        self.timed_out = timed_out
