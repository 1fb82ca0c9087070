"""
deploy_trigger.handler — Deploy trigger worker Lambda.

Triggered by two event sources:
  - S3 ObjectCreated on the archive bucket: publish the bundle, commit the
    manifest, tag superseded assets, emit one invalidation signal, release
    the archive.
  - SQS batches from the invalidation queue: one CloudFront invalidation for
    the union of the batch (ReportBatchItemFailures enabled on the mapping).

No state is shared between invocations beyond cached clients and settings;
the manifest is re-read from the asset bucket every time.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any

import boto3
from aws_lambda_powertools import Logger, Tracer
from aws_lambda_powertools.utilities.typing import LambdaContext
from botocore.exceptions import ClientError
from deploy_pipeline import (
    ArchiveDataError,
    ArchiveStore,
    AssetStore,
    BundlePublisher,
    CloudFrontInvalidator,
    ConfigurationError,
    InvalidationBatcher,
    InvalidationChannel,
    Settings,
    load_settings,
)
from deploy_pipeline.bundle import archive_refs_from_event
from deploy_pipeline.models import ChannelMessage

logger = Logger(service="deploy-trigger")
tracer = Tracer()


# ---------------------------------------------------------------------------
# Clients and stores, built once per warm container
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class WorkerComponents:
    settings: Settings
    archives: ArchiveStore
    assets: AssetStore
    channel: InvalidationChannel
    batcher: InvalidationBatcher

    def publisher(self) -> BundlePublisher:
        return BundlePublisher(
            self.archives,
            self.assets,
            self.channel,
            expiry_grace_days=self.settings.expiry_grace_days,
            reserved_prefix=self.settings.reserved_prefix,
        )


_components: WorkerComponents | None = None


def build_components(settings: Settings) -> WorkerComponents:
    """Create clients and verify the asset bucket before any event is handled."""
    region = settings.region
    s3 = boto3.client("s3", region_name=region)
    sqs = boto3.client("sqs", region_name=region)
    sns = boto3.client("sns", region_name=region)
    cloudfront = boto3.client("cloudfront", region_name=region)

    assets = AssetStore(
        s3,
        settings.asset_bucket,
        manifest_key=settings.manifest_key,
        cache_control=settings.cache_control,
        conditional_manifest_writes=settings.conditional_manifest_writes,
    )
    try:
        assets.verify_writable()
    except ClientError as exc:
        raise ConfigurationError(
            f"Asset bucket {settings.asset_bucket!r} is not writable: {exc}"
        ) from exc

    channel = InvalidationChannel(
        sns_client=sns,
        sqs_client=sqs,
        topic_arn=settings.topic_arn,
        queue_url=settings.queue_url,
        dead_letter_queue_url=settings.dead_letter_queue_url,
    )
    cdn = CloudFrontInvalidator(
        cloudfront,
        settings.distribution_id,
        max_paths_per_call=settings.max_paths_per_invalidation,
    )
    return WorkerComponents(
        settings=settings,
        archives=ArchiveStore(s3),
        assets=assets,
        channel=channel,
        batcher=InvalidationBatcher(cdn, channel, max_receive_count=settings.max_receive_count),
    )


def get_components() -> WorkerComponents:
    global _components
    if _components is None:
        settings = load_settings()
        if not os.environ.get("POWERTOOLS_LOG_LEVEL"):
            logger.setLevel(settings.log_level)
        _components = build_components(settings)
        logger.debug(
            "Worker initialised",
            extra={
                "asset_bucket": settings.asset_bucket,
                "distribution_id": settings.distribution_id,
                "expiry_enabled": settings.expiry_enabled,
                "environment": str(settings.environment),
            },
        )
    return _components


# ---------------------------------------------------------------------------
# Archive path
# ---------------------------------------------------------------------------


def _dead_letter_or_raise(
    components: WorkerComponents, payload: dict[str, Any], exc: ArchiveDataError
) -> None:
    """Data errors never succeed on retry; park them when a DLQ exists."""
    if not components.channel.dead_letter_queue_url:
        raise exc
    components.channel.dead_letter_payload(payload, reason=str(exc))


def handle_archive_event(event: dict[str, Any], components: WorkerComponents) -> dict[str, Any]:
    try:
        refs = archive_refs_from_event(event)
    except ArchiveDataError as exc:
        logger.exception("Unusable archive event")
        _dead_letter_or_raise(components, {"event": event}, exc)
        return {"status": "dead_lettered", "deployments": []}

    deployments: list[dict[str, Any]] = []
    for ref in refs:
        logger.append_keys(deployment_id=ref.deployment_id)
        try:
            result = components.publisher().publish(ref)
        except ArchiveDataError as exc:
            logger.exception("Archive rejected", extra={"archive_key": ref.key})
            _dead_letter_or_raise(
                components,
                {"bucket": ref.bucket, "key": ref.key, "version_id": ref.version_id},
                exc,
            )
            deployments.append({"deploymentId": ref.deployment_id, "state": "dead_lettered"})
            continue
        deployments.append(
            {
                "deploymentId": result.deployment_id,
                "state": str(result.state),
                "published": len(result.published),
                "expired": len(result.expired),
            }
        )
    return {"status": "processed", "deployments": deployments}


# ---------------------------------------------------------------------------
# Invalidation path
# ---------------------------------------------------------------------------


def handle_invalidation_batch(
    event: dict[str, Any], components: WorkerComponents
) -> dict[str, Any]:
    """Invalidate one SQS batch.

    InvalidationError is left to propagate: a failed invocation returns every
    message to the queue, and they come back after the visibility timeout.
    """
    messages = [
        ChannelMessage.from_lambda_record(r)
        for r in event.get("Records", [])
        if r.get("eventSource") == "aws:sqs"
    ]
    result = components.batcher.process(messages)
    logger.info(
        "Invalidation batch complete",
        extra={
            "acknowledged": len(result.acknowledged),
            "failed": len(result.failed),
            "dead_lettered": len(result.dead_lettered),
            "requeued_paths": len(result.requeued_paths),
            "rejected_paths": len(result.rejected_paths),
            "invalidation_ids": list(result.invalidation_ids),
        },
    )
    return {"batchItemFailures": [{"itemIdentifier": mid} for mid in result.failed]}


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def _event_source(event: dict[str, Any]) -> str | None:
    records = event.get("Records") or []
    if not records:
        return None
    return records[0].get("eventSource")


@logger.inject_lambda_context(clear_state=True)
@tracer.capture_lambda_handler
def handler(event: dict[str, Any], context: LambdaContext) -> dict[str, Any]:
    """Deploy trigger entry point."""
    components = get_components()
    source = _event_source(event)

    if source == "aws:sqs":
        return handle_invalidation_batch(event, components)
    if source == "aws:s3":
        return handle_archive_event(event, components)

    logger.warning("Ignoring event from unknown source", extra={"event_source": source})
    return {"status": "ignored"}
