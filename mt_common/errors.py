"""
Error taxonomy shared by every MobileTester component.

Provider and analysis errors are raised by the external-facing adapters and
handled by the orchestrator; validation and state errors surface to callers.
"""


class MobileTesterError(Exception):
    """Base class for all MobileTester errors."""


class ValidationError(MobileTesterError):
    """Submitted input is invalid (device selection, artifact, missing fields)."""


class JobNotFoundError(MobileTesterError):
    """The referenced job does not exist."""


class InvalidStateError(MobileTesterError):
    """The requested operation is not permitted in the job's current status."""


class ConflictError(MobileTesterError):
    """A conditional update lost against a concurrent transition."""


class ProviderError(MobileTesterError):
    """Base class for device-farm provider failures."""


class ProviderRejected(ProviderError):
    """The provider refused the request. Not retryable."""


class ProviderUnavailable(ProviderError):
    """Transient provider or network failure. Retry with backoff."""


class AnalysisUnavailable(MobileTesterError):
    """The AI analysis endpoint could not produce a usable report."""


class TimeoutExceeded(MobileTesterError):
    """A job exceeded its wall-clock ceiling."""


class ArtifactStoreError(MobileTesterError):
    """Uploading or deleting a binary artifact failed."""
