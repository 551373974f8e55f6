"""
Exception hierarchy for the pipeline.

Handlers raise these to tell the queue how a failure should be treated;
everything else raised from a handler is a transient failure.
"""


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class JobPayloadError(PipelineError, ValueError):
    """Payload cannot be serialized for the broker."""


class JobTimeoutError(PipelineError):
    """Handler did not finish within the worker watchdog timeout."""


class JobStalledError(PipelineError):
    """Job stayed Active past its stall deadline with no retries left."""


class UnrecoverableJobError(PipelineError):
    """Failure that retrying cannot fix; the job is dead-lettered at once."""


class EmailDeliveryError(PipelineError):
    """One or more recipients of a bulk email job could not be reached."""

    def __init__(self, failed_recipients):
        self.failed_recipients = list(failed_recipients)
        super().__init__(f"{len(self.failed_recipients)} recipient(s) failed")


class AggregationError(PipelineError):
    """A batch aggregation run aborted before committing its output."""
