"""Pipeline error taxonomy.

Every failure the pipeline knows how to classify is a ``PipelineError`` with a
stable ``code`` (stored on the job or clip), a short user-presentable
``message`` and a ``retryable`` flag consulted by the step retry loop.
"""


class PipelineError(Exception):
    """Raised when a pipeline step hits a known error condition."""

    code = "internal_error"
    default_message = "Something went wrong while processing your video."
    retryable = False

    def __init__(self, message: str = None, retryable: bool = None, code: str = None):
        self.message = message or self.default_message
        if retryable is not None:
            self.retryable = retryable
        if code is not None:
            self.code = code
        super().__init__(f"[{self.code}] {self.message}")


# Validation: never retried, detected before any external call where possible

class InvalidInputError(PipelineError):
    code = "invalid_input"
    default_message = "The submitted URL is not a supported video link."


class QuotaExceededError(PipelineError):
    code = "quota_exceeded"
    default_message = "Monthly clip limit reached. Upgrade your plan to generate more clips."


class JobCancelledError(PipelineError):
    code = "cancelled"
    default_message = "Cancelled by user"


# Transient / provider

class ProviderError(PipelineError):
    """External provider failed (timeout, 5xx, rate limit unless stated otherwise)."""
    code = "provider_error"
    default_message = "An external service failed. Please try again later."
    retryable = True

    def __init__(self, message: str = None, retryable: bool = None, code: str = None, status_code: int = None):
        super().__init__(message, retryable, code)
        self.status_code = status_code  # HTTP status when the provider answered


class SourceUnavailableError(PipelineError):
    code = "source_unavailable"
    default_message = "Could not download the video. It may be private, removed or region-locked."
    retryable = True


class CorruptDownloadError(PipelineError):
    code = "corrupt_download"
    default_message = "The downloaded video was empty or corrupt."
    retryable = True


# Semantic / empty result

class NoSpeechDetectedError(PipelineError):
    code = "no_speech_detected"
    default_message = "No speech was detected in this video."
    retryable = True


class NoHighlightsFoundError(PipelineError):
    code = "no_highlights_found"
    default_message = "No clip-worthy moments were found in this video."
    retryable = True


# Per-unit failures (recorded on the clip, never fail the job)

class RenderFailedError(PipelineError):
    code = "render_failed"
    default_message = "Rendering failed for this clip."


class RenderTimeoutError(PipelineError):
    code = "render_timeout"
    default_message = "Rendering took too long for this clip."


class PublishError(PipelineError):
    code = "publish_failed"
    default_message = "Upload to the platform failed."


class CredentialExpiredError(PublishError):
    code = "credential_expired"
    default_message = "Platform connection expired. Please reconnect the account."


def is_retryable(exc: BaseException) -> bool:
    """Transient unless the error says otherwise."""
    if isinstance(exc, PipelineError):
        return exc.retryable
    return True
