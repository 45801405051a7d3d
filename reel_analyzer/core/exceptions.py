"""Custom exceptions for Reel Analyzer.

This module defines the exception hierarchy used throughout the service.
Every failure the pipeline can surface inherits from PipelineError, which
carries the HTTP status the webhook server answers with and whether the
caller may reasonably retry.
"""


class PipelineError(Exception):
    """Base class for pipeline errors.

    All failures reachable from the coordinator's states are converted to a
    subclass of this error before they leave the coordinator.
    """

    status_code: int = 500
    retryable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retryable: bool | None = None,
    ):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if retryable is not None:
            self.retryable = retryable


class InvalidInputError(PipelineError):
    """Malformed or missing URL, identifier or request field."""

    status_code: int = 400
    retryable: bool = False


class NotFoundError(PipelineError):
    """Post is private, deleted, or contains no media."""

    status_code: int = 404
    retryable: bool = False


class UpstreamBlockedError(PipelineError):
    """The platform redirected us to a login wall.

    Treated as an anti-automation signal. The caller may retry later.
    """

    status_code: int = 500
    retryable: bool = True


class ResourceUnavailableError(PipelineError):
    """The browser session is not running or a page could not be opened."""

    status_code: int = 503
    retryable: bool = True


class NavigationError(PipelineError):
    """Page navigation failed."""

    status_code: int = 502
    retryable: bool = True


class NavigationTimeoutError(NavigationError):
    """Page navigation did not reach network idle before the timeout."""

    status_code: int = 504
    retryable: bool = True


class DownloadFailedError(PipelineError):
    """A media asset could not be downloaded to local storage."""

    status_code: int = 500
    retryable: bool = True


class AnalysisFailedError(PipelineError):
    """The analysis service call failed or timed out."""

    status_code: int = 500
    retryable: bool = True


class InternalError(PipelineError):
    """Catch-all for unexpected failures.

    The message of the original exception is logged but never returned to
    HTTP callers.
    """

    status_code: int = 500
    retryable: bool = False


class ConfigurationError(Exception):
    """Invalid configuration.

    This is NOT a PipelineError - configuration issues should be fixed
    before the server starts, not reported per request.
    """

    pass
