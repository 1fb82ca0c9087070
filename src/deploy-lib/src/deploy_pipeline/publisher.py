"""
deploy_pipeline.publisher — Bundle publish state machine.

    FETCHED -> EXTRACTED -> PUBLISHED -> MANIFEST_COMMITTED
            -> EXPIRED_OLD_ASSETS -> SIGNALLED -> ARCHIVE_RELEASED

Every step is an overwrite, a tag write or a message send, so the whole
machine can be re-run from the top for the same archive version. Files are
always written before the manifest: once the new manifest is visible its
whole file set is already in the bucket, and until then the old manifest
still describes a complete deployment.

An event for a version that was already released ends in ALREADY_RELEASED
without touching the asset bucket or the channel.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime

from aws_lambda_powertools import Logger

from deploy_pipeline.assets import AssetStore
from deploy_pipeline.bundle import ArchiveStore, extract_bundle
from deploy_pipeline.channel import InvalidationChannel
from deploy_pipeline.exceptions import ArchiveDataError, ManifestDataError
from deploy_pipeline.models import (
    ArchiveRef,
    BundleFile,
    DeploymentManifest,
    InvalidationSignal,
    ManifestChanges,
    PublishResult,
    PublishState,
    diff_manifests,
    to_cdn_path,
)

logger = Logger(service="deploy-pipeline")


def _now_utc() -> datetime:
    return datetime.now(UTC)


class BundlePublisher:
    def __init__(
        self,
        archives: ArchiveStore,
        assets: AssetStore,
        channel: InvalidationChannel,
        *,
        expiry_grace_days: int,
        reserved_prefix: str,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._archives = archives
        self._assets = assets
        self._channel = channel
        self._grace_days = expiry_grace_days
        self._reserved_prefix = reserved_prefix
        self._clock = clock
        self.state = PublishState.PENDING

    def _advance(self, state: PublishState, **fields: object) -> None:
        self.state = state
        logger.info("Publish state", extra={"state": str(state), **fields})

    def _is_reserved(self, path: str) -> bool:
        return path == self._assets.manifest_key or path.startswith(self._reserved_prefix)

    def publish(self, ref: ArchiveRef) -> PublishResult:
        """Run the state machine for one pinned archive version."""
        self.state = PublishState.PENDING

        content = self._archives.fetch(ref)
        if content is None:
            self.state = PublishState.ALREADY_RELEASED
            logger.info(
                "Archive already consumed; nothing to publish",
                extra={"archive_key": ref.key, "version_id": ref.version_id},
            )
            return PublishResult(
                deployment_id=ref.deployment_id,
                state=self.state,
                published=(),
                skipped=(),
                expired=(),
                signal=None,
            )
        self._advance(PublishState.FETCHED, archive_bytes=len(content))

        files = extract_bundle(content, archive=ref)
        self._advance(PublishState.EXTRACTED, file_count=len(files))

        published, skipped = self._publish_files(files)
        if not published:
            raise ArchiveDataError(
                "Archive contains only reserved paths",
                archive_key=ref.key,
                version_id=ref.version_id,
            )
        self._advance(PublishState.PUBLISHED, published=len(published), skipped=len(skipped))

        previous, previous_etag = self._load_previous()
        new_files = {f.path: f.sha256 for f in files if f.path in published}
        changes = self._changes(ref, previous, new_files)
        manifest = DeploymentManifest(
            deployment_id=ref.deployment_id,
            deployed_at=self._clock().isoformat(),
            files=new_files,
            changes=changes,
        )
        self._assets.commit_manifest(manifest, previous_etag=previous_etag)
        self._advance(PublishState.MANIFEST_COMMITTED, deployment_id=manifest.deployment_id)

        expired = self._expire(changes.expire)
        self._advance(PublishState.EXPIRED_OLD_ASSETS, expired=len(expired))

        signal = self._signal(ref, changes)
        self._advance(
            PublishState.SIGNALLED,
            invalidate_all=changes.invalidate_all,
            path_count=len(changes.invalidate),
        )

        self._archives.release(ref)
        self._advance(PublishState.ARCHIVE_RELEASED)

        return PublishResult(
            deployment_id=ref.deployment_id,
            state=self.state,
            published=tuple(published),
            skipped=tuple(skipped),
            expired=tuple(expired),
            signal=signal,
        )

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _publish_files(self, files: list[BundleFile]) -> tuple[list[str], list[str]]:
        published: list[str] = []
        skipped: list[str] = []
        for file in files:
            if self._is_reserved(file.path):
                logger.warning("Skipping file in reserved namespace", extra={"path": file.path})
                skipped.append(file.path)
                continue
            self._assets.put_file(file)
            published.append(file.path)
        return published, skipped

    def _load_previous(self) -> tuple[DeploymentManifest | None, str | None]:
        """Read the live manifest. An unreadable one is reported and treated as absent."""
        raw, etag = self._assets.read_manifest_raw()
        if raw is None:
            return None, None
        try:
            return DeploymentManifest.from_json(raw), etag
        except ManifestDataError:
            logger.exception("Stored manifest is malformed; invalidating everything")
            return _UNREADABLE, etag

    def _changes(
        self,
        ref: ArchiveRef,
        previous: DeploymentManifest | None,
        new_files: dict[str, str],
    ) -> ManifestChanges:
        if previous is _UNREADABLE:
            return ManifestChanges(invalidate_all=True)
        if previous is not None and previous.deployment_id == ref.deployment_id:
            # Retry of a deployment that already committed: redo its recorded changes
            logger.info("Manifest already committed for this deployment; replaying changes")
            return previous.changes

        diff = diff_manifests(
            previous,
            DeploymentManifest(deployment_id=ref.deployment_id, deployed_at="", files=new_files),
        )
        return ManifestChanges(
            invalidate=tuple(sorted(to_cdn_path(p) for p in diff.invalidation_paths)),
            expire=tuple(sorted(diff.removed)),
        )

    def _expire(self, paths: tuple[str, ...]) -> list[str]:
        if self._grace_days < 0:
            if paths:
                logger.debug("Expiry disabled; superseded assets left untagged")
            return []
        today = self._clock().date()
        return [
            path
            for path in paths
            if self._assets.tag_for_expiry(path, self._grace_days, today=today)
        ]

    def _signal(self, ref: ArchiveRef, changes: ManifestChanges) -> InvalidationSignal | None:
        if changes.invalidate_all:
            signal = InvalidationSignal.for_all(ref.deployment_id)
        elif changes.invalidate:
            signal = InvalidationSignal.for_paths(set(changes.invalidate), ref.deployment_id)
        else:
            logger.info("Deployment changed no content; no invalidation needed")
            return None
        self._channel.send(signal)
        return signal


# Sentinel for "a manifest exists but cannot be parsed"
_UNREADABLE = DeploymentManifest(deployment_id="", deployed_at="")
