"""
deploy_pipeline — Static asset deploy-and-invalidate pipeline.

Publishes uploaded zip bundles into the CDN-backed asset bucket behind a
single manifest commit, tags superseded assets for the lifecycle sweep, and
collapses invalidation signals into batched CloudFront invalidations.
"""

from deploy_pipeline.assets import AssetStore
from deploy_pipeline.batcher import InvalidationBatcher
from deploy_pipeline.bundle import ArchiveStore
from deploy_pipeline.cdn import CloudFrontInvalidator
from deploy_pipeline.channel import InvalidationChannel
from deploy_pipeline.config import Settings, load_settings
from deploy_pipeline.exceptions import (
    ArchiveDataError,
    ConfigurationError,
    DeployPipelineError,
    InvalidationError,
)
from deploy_pipeline.publisher import BundlePublisher

__all__ = [
    "ArchiveDataError",
    "ArchiveStore",
    "AssetStore",
    "BundlePublisher",
    "CloudFrontInvalidator",
    "ConfigurationError",
    "DeployPipelineError",
    "InvalidationBatcher",
    "InvalidationChannel",
    "InvalidationError",
    "Settings",
    "load_settings",
]
