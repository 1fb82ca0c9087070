"""
deploy_pipeline.exceptions — Error taxonomy for the deploy-and-invalidate pipeline.

Transient AWS failures are not wrapped: botocore ClientError propagates so the
triggering event stays unacknowledged and the event source redelivers it.
"""


class DeployPipelineError(Exception):
    """Base class for pipeline errors."""


class ConfigurationError(DeployPipelineError):
    """Missing or invalid configuration. Fatal at cold start, never per invocation."""


class DataError(DeployPipelineError):
    """Input that will never succeed on retry; routed to the dead-letter queue."""


class ArchiveDataError(DataError):
    """
    Raised when an uploaded archive cannot be turned into a deployment.

    Attributes:
        archive_key: Key of the offending archive in the archive bucket.
        version_id:  Pinned version id, if the event carried one.
    """

    def __init__(self, message: str, *, archive_key: str = "", version_id: str = "") -> None:
        self.archive_key = archive_key
        self.version_id = version_id
        super().__init__(message)


class ManifestDataError(DataError):
    """The stored deployment manifest could not be parsed."""


class SignalDataError(DataError):
    """An invalidation channel message is not a valid invalidation signal."""


class ManifestConflictError(DeployPipelineError):
    """A conditional manifest write lost a race with a concurrent deployment."""


class InvalidationError(DeployPipelineError):
    """
    Raised when no part of an invalidation batch reached the CDN.

    Attributes:
        paths: The unioned path set that was attempted.
    """

    def __init__(self, message: str, *, paths: tuple[str, ...] = ()) -> None:
        self.paths = paths
        super().__init__(message)
