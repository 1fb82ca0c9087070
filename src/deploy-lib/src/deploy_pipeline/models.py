"""
deploy_pipeline.models — Value types shared by the publish and invalidation paths.

Objects defined here:
    ArchiveRef          — pinned reference to one uploaded bundle version
    BundleFile          — one extracted file, ready to PUT
    DeploymentManifest  — the hidden record of what is live in the asset bucket
    InvalidationSignal  — message body carried on the invalidation channel
    PublishResult       — outcome of one run of the publish state machine
    BatchResult         — outcome of one invalidation batch
"""

from __future__ import annotations

import hashlib
import json
import posixpath
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from deploy_pipeline.exceptions import ManifestDataError, SignalDataError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
DEFAULT_MANIFEST_KEY: str = ".deploy/manifest.json"
ARCHIVE_SUFFIX: str = ".zip"
ALL_PATHS: str = "/*"

EXPIRE_TAG_KEY: str = "expire"
EXPIRE_TAG_VALUE: str = "true"
EXPIRE_AFTER_TAG_KEY: str = "expire-after"

# SQS receive ceiling and CloudFront per-request path ceiling
MAX_RECEIVE_BATCH: int = 10
MAX_INVALIDATION_PATHS: int = 3000

# Redelivery delay must cover several worst-case invocations
VISIBILITY_TIMEOUT_MULTIPLE: int = 6


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class PublishState(StrEnum):
    PENDING = "pending"
    FETCHED = "fetched"
    EXTRACTED = "extracted"
    PUBLISHED = "published"
    MANIFEST_COMMITTED = "manifest_committed"
    EXPIRED_OLD_ASSETS = "expired_old_assets"
    SIGNALLED = "signalled"
    ARCHIVE_RELEASED = "archive_released"
    # Duplicate event for a version an earlier run already consumed
    ALREADY_RELEASED = "already_released"


class Environment(StrEnum):
    PRODUCTION = "production"
    STAGING = "staging"
    DEV = "dev"


# ---------------------------------------------------------------------------
# Archive
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ArchiveRef:
    """One uploaded archive, pinned to the version the store assigned.

    The version id is never optional: reading "latest" would let a second
    upload under the same key race the first one's trigger.
    """

    bucket: str
    key: str
    version_id: str

    @property
    def deployment_name(self) -> str:
        name = posixpath.basename(self.key)
        if name.endswith(ARCHIVE_SUFFIX):
            name = name[: -len(ARCHIVE_SUFFIX)]
        return name or self.key

    @property
    def deployment_id(self) -> str:
        return f"{self.deployment_name}@{self.version_id}"


@dataclass(frozen=True)
class BundleFile:
    path: str  # relative POSIX path, no leading slash
    body: bytes
    content_type: str

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.body).hexdigest()


# ---------------------------------------------------------------------------
# Manifest
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ManifestChanges:
    """What a deployment changed relative to the one it replaced.

    Recorded in the manifest so a retry of the same deployment, which finds
    its own manifest already committed, can redo expiry tagging and the
    invalidation signal instead of diffing the manifest against itself.
    """

    invalidate: tuple[str, ...] = ()
    expire: tuple[str, ...] = ()
    invalidate_all: bool = False


@dataclass(frozen=True)
class DeploymentManifest:
    """Hidden record of the live deployment.

    files maps each published asset path to the sha256 of its content; the
    hash is what change detection compares between two deployments.
    """

    deployment_id: str
    deployed_at: str  # ISO 8601 UTC
    files: dict[str, str] = field(default_factory=dict)
    changes: ManifestChanges = field(default_factory=ManifestChanges)

    @property
    def paths(self) -> frozenset[str]:
        return frozenset(self.files)

    def to_json(self) -> str:
        return json.dumps(
            {
                "deployment_id": self.deployment_id,
                "deployed_at": self.deployed_at,
                "files": dict(sorted(self.files.items())),
                "changes": {
                    "invalidate": list(self.changes.invalidate),
                    "expire": list(self.changes.expire),
                    "all": self.changes.invalidate_all,
                },
            },
            indent=2,
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> DeploymentManifest:
        try:
            data = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as exc:
            raise ManifestDataError(f"Manifest is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ManifestDataError("Manifest must be a JSON object")

        files = data.get("files")
        deployment_id = data.get("deployment_id")
        if not isinstance(files, dict) or not isinstance(deployment_id, str):
            raise ManifestDataError("Manifest is missing 'deployment_id' or 'files'")
        if not all(isinstance(k, str) and isinstance(v, str) for k, v in files.items()):
            raise ManifestDataError("Manifest 'files' must map paths to hashes")

        raw_changes = data.get("changes") or {}
        if not isinstance(raw_changes, dict):
            raise ManifestDataError("Manifest 'changes' must be a JSON object")
        changes = ManifestChanges(
            invalidate=tuple(str(p) for p in raw_changes.get("invalidate", [])),
            expire=tuple(str(p) for p in raw_changes.get("expire", [])),
            invalidate_all=bool(raw_changes.get("all", False)),
        )

        return cls(
            deployment_id=deployment_id,
            deployed_at=str(data.get("deployed_at", "")),
            files=dict(files),
            changes=changes,
        )


@dataclass(frozen=True)
class ManifestDiff:
    added: frozenset[str]
    removed: frozenset[str]
    changed: frozenset[str]
    unchanged: frozenset[str]

    @property
    def invalidation_paths(self) -> frozenset[str]:
        """Paths whose cached copy is stale: new, gone, or different content."""
        return self.added | self.removed | self.changed


def diff_manifests(
    previous: DeploymentManifest | None, current: DeploymentManifest
) -> ManifestDiff:
    if previous is None:
        return ManifestDiff(
            added=current.paths,
            removed=frozenset(),
            changed=frozenset(),
            unchanged=frozenset(),
        )

    common = previous.paths & current.paths
    changed = frozenset(p for p in common if previous.files[p] != current.files[p])
    return ManifestDiff(
        added=current.paths - previous.paths,
        removed=previous.paths - current.paths,
        changed=changed,
        unchanged=common - changed,
    )


# ---------------------------------------------------------------------------
# Invalidation signal
# ---------------------------------------------------------------------------


def to_cdn_path(path: str) -> str:
    return path if path.startswith("/") else f"/{path}"


@dataclass(frozen=True)
class InvalidationSignal:
    """A set of changed CDN paths, emitted once per deployment publish.

    invalidate_all collapses the signal to the wildcard path regardless of
    the listed paths.
    """

    paths: frozenset[str]
    coalescing_key: str
    invalidate_all: bool = False

    @classmethod
    def for_paths(
        cls, paths: set[str] | frozenset[str], coalescing_key: str
    ) -> InvalidationSignal:
        return cls(paths=frozenset(to_cdn_path(p) for p in paths), coalescing_key=coalescing_key)

    @classmethod
    def for_all(cls, coalescing_key: str) -> InvalidationSignal:
        return cls(paths=frozenset(), coalescing_key=coalescing_key, invalidate_all=True)

    @property
    def cdn_paths(self) -> frozenset[str]:
        if self.invalidate_all or ALL_PATHS in self.paths:
            return frozenset({ALL_PATHS})
        return self.paths

    def to_json(self) -> str:
        return json.dumps(
            {
                "paths": sorted(self.paths),
                "coalescing_key": self.coalescing_key,
                "all": self.invalidate_all,
            }
        )

    @classmethod
    def from_json(cls, raw: str) -> InvalidationSignal:
        try:
            data: Any = json.loads(raw)
        except ValueError as exc:
            raise SignalDataError(f"Invalidation signal is not valid JSON: {exc}") from exc

        # SNS -> SQS delivery without raw message delivery wraps the payload
        if isinstance(data, dict) and data.get("Type") == "Notification" and "Message" in data:
            return cls.from_json(str(data["Message"]))

        if not isinstance(data, dict):
            raise SignalDataError("Invalidation signal must be a JSON object")
        paths = data.get("paths", [])
        if not isinstance(paths, list) or not all(isinstance(p, str) and p for p in paths):
            raise SignalDataError("Invalidation signal 'paths' must be a list of strings")
        invalidate_all = bool(data.get("all", False))
        if not paths and not invalidate_all:
            raise SignalDataError("Invalidation signal names no paths")

        return cls(
            paths=frozenset(to_cdn_path(p) for p in paths),
            coalescing_key=str(data.get("coalescing_key", "")),
            invalidate_all=invalidate_all,
        )


@dataclass(frozen=True)
class ChannelMessage:
    """One message taken off the invalidation queue.

    Built either from a Lambda SQS event record or from ReceiveMessage.
    """

    message_id: str
    body: str
    receipt_handle: str
    receive_count: int = 1

    @classmethod
    def from_lambda_record(cls, record: dict[str, Any]) -> ChannelMessage:
        attributes = record.get("attributes", {})
        return cls(
            message_id=str(record.get("messageId", "")),
            body=str(record.get("body", "")),
            receipt_handle=str(record.get("receiptHandle", "")),
            receive_count=int(attributes.get("ApproximateReceiveCount", 1)),
        )

    @classmethod
    def from_sqs_message(cls, message: dict[str, Any]) -> ChannelMessage:
        attributes = message.get("Attributes", {})
        return cls(
            message_id=str(message.get("MessageId", "")),
            body=str(message.get("Body", "")),
            receipt_handle=str(message.get("ReceiptHandle", "")),
            receive_count=int(attributes.get("ApproximateReceiveCount", 1)),
        )


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PublishResult:
    deployment_id: str
    state: PublishState
    published: tuple[str, ...]
    skipped: tuple[str, ...]
    expired: tuple[str, ...]
    signal: InvalidationSignal | None


@dataclass(frozen=True)
class BatchResult:
    """Outcome of one invalidation batch.

    acknowledged: message ids safe to delete.
    failed: message ids that must stay on the channel for redelivery.
    requeued_paths: paths re-enqueued as a narrower signal after a partial failure.
    rejected_paths: paths CloudFront refused as invalid, routed to the dead-letter queue.
    """

    invalidated_paths: tuple[str, ...]
    invalidation_ids: tuple[str, ...]
    acknowledged: tuple[str, ...]
    failed: tuple[str, ...] = ()
    dead_lettered: tuple[str, ...] = ()
    requeued_paths: tuple[str, ...] = ()
    rejected_paths: tuple[str, ...] = ()
