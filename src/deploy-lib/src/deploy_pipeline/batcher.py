"""
deploy_pipeline.batcher — Invalidation debounce/batch engine.

A batch of channel messages becomes one CloudFront invalidation covering the
union of their paths. Nothing here waits or schedules: signals that arrive
while a batch is in flight stay invisible until the queue's visibility
timeout elapses and then form the next batch.

Acknowledgement rules:
  - CDN call fails outright      -> InvalidationError, nothing acknowledged.
  - CDN call partially fails     -> failed paths re-enqueued as a narrower
                                    signal, whole batch acknowledged.
  - CDN rejects paths as invalid -> those paths dead-lettered (or logged when
                                    no DLQ exists), whole batch acknowledged.
  - Malformed message            -> left for redelivery until its receive count
                                    reaches the limit, then dead-lettered.
"""

from __future__ import annotations

import hashlib

from aws_lambda_powertools import Logger

from deploy_pipeline.cdn import CloudFrontInvalidator
from deploy_pipeline.channel import InvalidationChannel
from deploy_pipeline.exceptions import SignalDataError
from deploy_pipeline.models import (
    ALL_PATHS,
    MAX_RECEIVE_BATCH,
    BatchResult,
    ChannelMessage,
    InvalidationSignal,
)

logger = Logger(service="deploy-pipeline")


def union_paths(signals: list[InvalidationSignal]) -> list[str]:
    """Deduplicated, sorted union; any wildcard signal collapses it to /*."""
    paths: set[str] = set()
    for signal in signals:
        paths |= signal.cdn_paths
    if ALL_PATHS in paths:
        return [ALL_PATHS]
    return sorted(paths)


def batch_seed(messages: list[ChannelMessage]) -> str:
    return ",".join(sorted(m.message_id for m in messages))


class InvalidationBatcher:
    def __init__(
        self,
        cdn: CloudFrontInvalidator,
        channel: InvalidationChannel,
        *,
        max_receive_count: int,
    ) -> None:
        self._cdn = cdn
        self._channel = channel
        self._max_receive_count = max_receive_count

    def process(self, messages: list[ChannelMessage]) -> BatchResult:
        valid: list[tuple[ChannelMessage, InvalidationSignal]] = []
        malformed: list[tuple[ChannelMessage, SignalDataError]] = []
        for message in messages:
            try:
                valid.append((message, InvalidationSignal.from_json(message.body)))
            except SignalDataError as exc:
                logger.warning(
                    "Malformed invalidation signal",
                    extra={
                        "message_id": message.message_id,
                        "receive_count": message.receive_count,
                        "error": str(exc),
                    },
                )
                malformed.append((message, exc))

        paths = union_paths([signal for _, signal in valid])
        invalidation_ids: tuple[str, ...] = ()
        requeued: tuple[str, ...] = ()
        rejected: tuple[str, ...] = ()
        if paths:
            seed = batch_seed([m for m, _ in valid])
            logger.info(
                "Invalidating batch",
                extra={"message_count": len(valid), "path_count": len(paths)},
            )
            # Raises InvalidationError when every chunk failed transiently
            outcome = self._cdn.invalidate(paths, reference_seed=seed)
            invalidation_ids = outcome.invalidation_ids
            if outcome.failed_paths:
                requeued = outcome.failed_paths
                retry_key = "retry:" + hashlib.sha256(seed.encode()).hexdigest()[:16]
                self._channel.send(InvalidationSignal.for_paths(set(requeued), retry_key))
                logger.warning(
                    "Partial invalidation failure; re-enqueued failed paths",
                    extra={"path_count": len(requeued)},
                )
            if outcome.rejected_paths:
                rejected = outcome.rejected_paths
                self._reject(rejected, [m.message_id for m, _ in valid])
            paths = list(outcome.succeeded_paths)

        dead_lettered: list[str] = []
        failed: list[str] = []
        for message, exc in malformed:
            if (
                message.receive_count >= self._max_receive_count
                and self._channel.dead_letter_queue_url
            ):
                self._channel.dead_letter(message, reason=str(exc))
                dead_lettered.append(message.message_id)
            else:
                failed.append(message.message_id)

        return BatchResult(
            invalidated_paths=tuple(paths),
            invalidation_ids=invalidation_ids,
            acknowledged=tuple(m.message_id for m, _ in valid) + tuple(dead_lettered),
            failed=tuple(failed),
            dead_lettered=tuple(dead_lettered),
            requeued_paths=requeued,
            rejected_paths=rejected,
        )

    def _reject(self, paths: tuple[str, ...], message_ids: list[str]) -> None:
        reason = "CloudFront rejected paths as invalid"
        if not self._channel.dead_letter_queue_url:
            logger.error(
                "CloudFront rejected paths; no dead-letter queue configured, dropping",
                extra={"paths": list(paths), "message_ids": message_ids},
            )
            return
        self._channel.dead_letter_payload(
            {"paths": list(paths), "message_ids": message_ids}, reason=reason
        )

    def drain_once(
        self, *, max_messages: int = MAX_RECEIVE_BATCH, wait_seconds: int = 20
    ) -> BatchResult | None:
        """Pull one batch straight from the queue, process it, delete what was acknowledged.

        Used outside Lambda, where no event source mapping deletes for us.
        Returns None when the queue had nothing visible.
        """
        messages = self._channel.receive(max_messages=max_messages, wait_seconds=wait_seconds)
        if not messages:
            return None
        result = self.process(messages)
        acknowledged = set(result.acknowledged)
        self._channel.delete([m for m in messages if m.message_id in acknowledged])
        return result
