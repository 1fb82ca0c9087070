#!/usr/bin/env python3
"""
drain_invalidations.py — Drain the invalidation queue outside Lambda.

Receives batches from the invalidation queue, issues one CloudFront
invalidation per batch for the union of its paths, and deletes only the
messages that were acknowledged. Useful when the event source mapping is
disabled or when replaying signals after a CloudFront outage.

Reads the same environment variables as the deploy trigger worker
(DISTRIBUTION_ID, INVALIDATION_QUEUE_URL, ...); flags override them.

Usage:
    uv run python scripts/drain_invalidations.py --queue-url <url> --distribution-id <id>
    uv run python scripts/drain_invalidations.py --dry-run
"""

from __future__ import annotations

import argparse
import os
import sys
from typing import Any

import boto3
from deploy_pipeline.batcher import InvalidationBatcher, union_paths
from deploy_pipeline.cdn import CloudFrontInvalidator
from deploy_pipeline.channel import InvalidationChannel
from deploy_pipeline.config import DEFAULT_MAX_RECEIVE_COUNT, DEFAULT_REGION
from deploy_pipeline.exceptions import InvalidationError, SignalDataError
from deploy_pipeline.models import MAX_RECEIVE_BATCH, InvalidationSignal

DEFAULT_MAX_BATCHES = 10
DEFAULT_WAIT_SECONDS = 5


def get_aws_region() -> str:
    return os.environ.get("AWS_REGION", "").strip() or DEFAULT_REGION


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument(
        "--queue-url",
        default=os.environ.get("INVALIDATION_QUEUE_URL"),
        help="Invalidation queue URL (default $INVALIDATION_QUEUE_URL)",
    )
    parser.add_argument(
        "--distribution-id",
        default=os.environ.get("DISTRIBUTION_ID"),
        help="CloudFront distribution ID (default $DISTRIBUTION_ID)",
    )
    parser.add_argument(
        "--dead-letter-queue-url",
        default=os.environ.get("DEAD_LETTER_QUEUE_URL"),
        help="Queue for malformed signals (default $DEAD_LETTER_QUEUE_URL)",
    )
    parser.add_argument(
        "--max-batches",
        type=int,
        default=DEFAULT_MAX_BATCHES,
        help=f"Stop after this many batches (default {DEFAULT_MAX_BATCHES})",
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=int(os.environ.get("MAX_BATCH_SIZE") or MAX_RECEIVE_BATCH),
        help=f"Messages per receive, 1-{MAX_RECEIVE_BATCH} (default $MAX_BATCH_SIZE or 10)",
    )
    parser.add_argument(
        "--wait-seconds",
        type=int,
        default=DEFAULT_WAIT_SECONDS,
        help=f"Long-poll wait per receive (default {DEFAULT_WAIT_SECONDS})",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the unioned paths of one batch without invalidating or deleting",
    )
    return parser.parse_args(argv)


def dry_run(channel: InvalidationChannel, *, batch_size: int, wait_seconds: int) -> int:
    messages = channel.receive(max_messages=batch_size, wait_seconds=wait_seconds)
    signals: list[InvalidationSignal] = []
    for message in messages:
        try:
            signals.append(InvalidationSignal.from_json(message.body))
        except SignalDataError as exc:
            print(f"malformed {message.message_id}: {exc}", file=sys.stderr)
    print(f"messages={len(messages)}")
    for path in union_paths(signals):
        print(path)
    return 0


def drain(
    batcher: InvalidationBatcher, *, max_batches: int, batch_size: int, wait_seconds: int
) -> int:
    total_messages = 0
    for _ in range(max_batches):
        try:
            result = batcher.drain_once(max_messages=batch_size, wait_seconds=wait_seconds)
        except InvalidationError as exc:
            print(f"Invalidation failed; batch left on queue: {exc}", file=sys.stderr)
            return 1
        if result is None:
            break
        total_messages += len(result.acknowledged)
        print(
            f"invalidated={len(result.invalidated_paths)} "
            f"acknowledged={len(result.acknowledged)} "
            f"failed={len(result.failed)} "
            f"requeued={len(result.requeued_paths)} "
            f"rejected={len(result.rejected_paths)}"
        )
    print(f"Drained {total_messages} message(s)")
    return 0


def main(argv: list[str] | None = None, *, clients: dict[str, Any] | None = None) -> int:
    args = parse_args(argv)
    if not args.queue_url:
        print("--queue-url or INVALIDATION_QUEUE_URL is required", file=sys.stderr)
        return 2
    if not 1 <= args.batch_size <= MAX_RECEIVE_BATCH:
        print(f"--batch-size must be between 1 and {MAX_RECEIVE_BATCH}", file=sys.stderr)
        return 2

    region = get_aws_region()
    clients = clients or {}
    sqs = clients.get("sqs") or boto3.client("sqs", region_name=region)
    channel = InvalidationChannel(
        sqs_client=sqs,
        queue_url=args.queue_url,
        dead_letter_queue_url=args.dead_letter_queue_url,
    )
    if args.dry_run:
        return dry_run(channel, batch_size=args.batch_size, wait_seconds=args.wait_seconds)

    if not args.distribution_id:
        print("--distribution-id or DISTRIBUTION_ID is required", file=sys.stderr)
        return 2
    cloudfront = clients.get("cloudfront") or boto3.client("cloudfront", region_name=region)
    batcher = InvalidationBatcher(
        CloudFrontInvalidator(cloudfront, args.distribution_id),
        channel,
        max_receive_count=int(os.environ.get("MAX_RECEIVE_COUNT") or DEFAULT_MAX_RECEIVE_COUNT),
    )
    return drain(
        batcher,
        max_batches=args.max_batches,
        batch_size=args.batch_size,
        wait_seconds=args.wait_seconds,
    )


if __name__ == "__main__":
    raise SystemExit(main())
