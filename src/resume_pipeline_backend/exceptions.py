"""
Exception hierarchy for the pipeline.

Provider errors split into transient ones (retried inside the provider client)
and permanent ones (raised to the caller straight away). Job-level errors
decide whether a failed phase consumes an attempt or fails the job outright.
"""

from __future__ import annotations

from typing import Optional


class PipelineError(Exception):
    """Base exception for all pipeline errors"""


class ProviderError(PipelineError):
    """Error returned by, or while talking to, the text-generation provider"""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TransientProviderError(ProviderError):
    """Retryable with backoff"""


class RateLimitError(TransientProviderError):
    """429 from the provider; the credential is rotated before the retry"""


class ProviderServerError(TransientProviderError):
    pass


class ProviderNetworkError(TransientProviderError):
    pass


class PermanentProviderError(ProviderError):
    """Never retried"""


class InputTooLargeError(PermanentProviderError):
    pass


class ContentBlockedError(PermanentProviderError):
    pass


class ResponseParseError(PermanentProviderError):
    """The provider answered but the payload is not a JSON object"""


class ProviderRequestError(PermanentProviderError):
    """Any other 4xx response"""


class UnrecoverableJobError(PipelineError):
    """Fails the job immediately instead of consuming another attempt"""


class SourceDocumentMissingError(UnrecoverableJobError):
    pass


class ExtractionError(UnrecoverableJobError):
    pass


class PhaseFailedError(PipelineError):
    """Raised by a phase executor after the failure has been persisted"""

    def __init__(self, job_id: str, step: str, status: str, cause: BaseException) -> None:
        super().__init__(f"{step} phase failed for {job_id} (job now {status}): {cause}")
        self.job_id = job_id
        self.step = step
        self.status = status


class StorageError(PipelineError):
    pass


class RenderError(PipelineError):
    pass
