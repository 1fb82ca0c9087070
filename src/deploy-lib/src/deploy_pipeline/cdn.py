"""
deploy_pipeline.cdn — CloudFront CreateInvalidation wrapper.

One call per batch; the path set is only split when it exceeds the
per-request ceiling, and each split is reported separately so the caller can
re-enqueue just the part that failed.

Paths travel through the pipeline as raw object keys and are percent-encoded
only here, on the way into CreateInvalidation. A chunk CloudFront refuses as
invalid is halved until the offending paths are isolated; those are reported
as rejected instead of failing the batch again on every redelivery.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any
from urllib.parse import quote

from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from deploy_pipeline.exceptions import InvalidationError
from deploy_pipeline.models import MAX_INVALIDATION_PATHS

logger = Logger(service="deploy-pipeline")

# Errors that repeat for the same request no matter how often it is retried
PERMANENT_ERROR_CODES = frozenset({"InvalidArgument", "InconsistentQuantities"})


@dataclass(frozen=True)
class InvalidationOutcome:
    invalidation_ids: tuple[str, ...]
    succeeded_paths: tuple[str, ...]
    failed_paths: tuple[str, ...]
    rejected_paths: tuple[str, ...] = ()

    @property
    def partial(self) -> bool:
        return bool(self.failed_paths) and bool(self.succeeded_paths)


def caller_reference(seed: str, chunk_label: int | str) -> str:
    """Deterministic CallerReference so a redelivered identical batch is a no-op."""
    digest = hashlib.sha256(f"{seed}:{chunk_label}".encode()).hexdigest()
    return f"deploy-{digest[:40]}"


def encode_path(path: str) -> str:
    """Percent-encode a CDN path; only a trailing * survives as a wildcard."""
    if path.endswith("*"):
        return quote(path[:-1], safe="/~") + "*"
    return quote(path, safe="/~")


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


class CloudFrontInvalidator:
    def __init__(
        self,
        cloudfront_client: Any,
        distribution_id: str,
        *,
        max_paths_per_call: int = MAX_INVALIDATION_PATHS,
    ) -> None:
        self._cloudfront = cloudfront_client
        self.distribution_id = distribution_id
        self._max_paths = max_paths_per_call

    def _create(self, chunk: list[str], reference: str) -> str:
        items = [encode_path(p) for p in chunk]
        response = self._cloudfront.create_invalidation(
            DistributionId=self.distribution_id,
            InvalidationBatch={
                "Paths": {"Quantity": len(items), "Items": items},
                "CallerReference": reference,
            },
        )
        return str(response.get("Invalidation", {}).get("Id", ""))

    def invalidate(self, paths: list[str], *, reference_seed: str) -> InvalidationOutcome:
        """Invalidate paths.

        Raises InvalidationError if nothing succeeded and nothing was rejected,
        i.e. every chunk hit a transient error.
        """
        ordered = sorted(set(paths))
        pending: list[tuple[str, list[str]]] = [
            (str(index), ordered[start : start + self._max_paths])
            for index, start in enumerate(range(0, len(ordered), self._max_paths))
        ]
        ids: list[str] = []
        succeeded: list[str] = []
        failed: list[str] = []
        rejected: list[str] = []
        last_error: ClientError | None = None

        while pending:
            label, chunk = pending.pop(0)
            try:
                invalidation_id = self._create(chunk, caller_reference(reference_seed, label))
            except ClientError as exc:
                code = _error_code(exc)
                if code in PERMANENT_ERROR_CODES:
                    if len(chunk) > 1:
                        middle = len(chunk) // 2
                        pending[0:0] = [
                            (f"{label}.0", chunk[:middle]),
                            (f"{label}.1", chunk[middle:]),
                        ]
                        logger.warning(
                            "CloudFront rejected chunk; splitting",
                            extra={"path_count": len(chunk), "error_code": code},
                        )
                    else:
                        rejected.extend(chunk)
                        logger.error(
                            "CloudFront rejected path",
                            extra={"path": chunk[0], "error_code": code},
                        )
                    continue
                last_error = exc
                failed.extend(chunk)
                logger.warning(
                    "CloudFront invalidation failed",
                    extra={
                        "distribution_id": self.distribution_id,
                        "path_count": len(chunk),
                        "error_code": code,
                    },
                )
                continue
            ids.append(invalidation_id)
            succeeded.extend(chunk)
            logger.info(
                "CloudFront invalidation created",
                extra={
                    "distribution_id": self.distribution_id,
                    "invalidation_id": invalidation_id,
                    "path_count": len(chunk),
                },
            )

        if failed and not succeeded and not rejected:
            raise InvalidationError(
                f"Invalidation of {len(ordered)} path(s) failed on {self.distribution_id}",
                paths=tuple(ordered),
            ) from last_error

        return InvalidationOutcome(
            invalidation_ids=tuple(ids),
            succeeded_paths=tuple(succeeded),
            failed_paths=tuple(failed),
            rejected_paths=tuple(rejected),
        )
