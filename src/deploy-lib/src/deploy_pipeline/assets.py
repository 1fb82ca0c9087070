"""
deploy_pipeline.assets — Asset bucket access: file publish, manifest, expiry tags.

The manifest is the single serialization point for "what is live". It is
re-read from the bucket on every invocation and written with one PUT.
Expired assets are only tagged here; the bucket lifecycle rule deletes them.
"""

from __future__ import annotations

from datetime import UTC, date, datetime, timedelta
from typing import Any

from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from deploy_pipeline.exceptions import ManifestConflictError
from deploy_pipeline.models import (
    EXPIRE_AFTER_TAG_KEY,
    EXPIRE_TAG_KEY,
    EXPIRE_TAG_VALUE,
    BundleFile,
    DeploymentManifest,
)

logger = Logger(service="deploy-pipeline")

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}
_PRECONDITION_CODES = {"PreconditionFailed", "412", "ConditionalRequestConflict", "409"}


def _error_code(error: ClientError) -> str:
    return str(error.response.get("Error", {}).get("Code", ""))


def expiry_tags(grace_days: int, *, today: date | None = None) -> list[dict[str, str]]:
    """Tag set marking an asset as eligible for the lifecycle sweep.

    grace_days == 0 makes the asset eligible immediately.
    """
    current = today or datetime.now(UTC).date()
    expire_after = current + timedelta(days=max(grace_days, 0))
    return [
        {"Key": EXPIRE_TAG_KEY, "Value": EXPIRE_TAG_VALUE},
        {"Key": EXPIRE_AFTER_TAG_KEY, "Value": expire_after.isoformat()},
    ]


class AssetStore:
    """Public-facing bucket served by the CDN."""

    def __init__(
        self,
        s3_client: Any,
        bucket: str,
        *,
        manifest_key: str,
        cache_control: str | None = None,
        conditional_manifest_writes: bool = False,
    ) -> None:
        self._s3 = s3_client
        self.bucket = bucket
        self.manifest_key = manifest_key
        self._cache_control = cache_control
        self._conditional = conditional_manifest_writes

    # ------------------------------------------------------------------
    # Startup check
    # ------------------------------------------------------------------

    @property
    def write_check_key(self) -> str:
        """Empty marker object next to the manifest, inside the reserved namespace."""
        return f"{self.manifest_key}.write-check"

    def verify_writable(self) -> None:
        """HeadBucket, then one PUT of the write-check marker.

        Raises ClientError when the bucket is missing, unreadable or not writable.
        """
        self._s3.head_bucket(Bucket=self.bucket)
        self._s3.put_object(
            Bucket=self.bucket,
            Key=self.write_check_key,
            Body=b"",
            CacheControl="no-store",
        )

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    def put_file(self, file: BundleFile) -> None:
        # A PUT without Tagging leaves the new object untagged, so a path that
        # is live again never keeps an expiry tag from an earlier supersession.
        kwargs: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": file.path,
            "Body": file.body,
            "ContentType": file.content_type,
        }
        if self._cache_control:
            kwargs["CacheControl"] = self._cache_control
        self._s3.put_object(**kwargs)

    def get_tags(self, key: str) -> dict[str, str]:
        response = self._s3.get_object_tagging(Bucket=self.bucket, Key=key)
        return {t["Key"]: t["Value"] for t in response.get("TagSet", [])}

    def tag_for_expiry(self, key: str, grace_days: int, *, today: date | None = None) -> bool:
        """Mark a superseded asset for the lifecycle sweep.

        Returns False when the object is already gone.
        """
        try:
            self._s3.put_object_tagging(
                Bucket=self.bucket,
                Key=key,
                Tagging={"TagSet": expiry_tags(grace_days, today=today)},
            )
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                logger.info("Superseded asset already removed", extra={"key": key})
                return False
            raise
        return True

    # ------------------------------------------------------------------
    # Manifest
    # ------------------------------------------------------------------

    def read_manifest_raw(self) -> tuple[bytes | None, str | None]:
        """Return (body, etag) of the stored manifest, or (None, None) if absent."""
        try:
            response = self._s3.get_object(Bucket=self.bucket, Key=self.manifest_key)
        except ClientError as exc:
            if _error_code(exc) in _NOT_FOUND_CODES:
                return None, None
            raise
        return response["Body"].read(), response.get("ETag")

    def read_manifest(self) -> DeploymentManifest | None:
        body, _ = self.read_manifest_raw()
        if body is None:
            return None
        return DeploymentManifest.from_json(body)

    def commit_manifest(
        self, manifest: DeploymentManifest, *, previous_etag: str | None = None
    ) -> None:
        """Overwrite the manifest in a single PUT: the deployment switch.

        With conditional writes enabled the PUT only succeeds if the manifest
        is still the one that was read (or still absent), so two racing
        deployments cannot both believe they committed.
        """
        kwargs: dict[str, Any] = {
            "Bucket": self.bucket,
            "Key": self.manifest_key,
            "Body": manifest.to_json().encode("utf-8"),
            "ContentType": "application/json",
            "CacheControl": "no-store",
        }
        if self._conditional:
            if previous_etag:
                kwargs["IfMatch"] = previous_etag
            else:
                kwargs["IfNoneMatch"] = "*"
        try:
            self._s3.put_object(**kwargs)
        except ClientError as exc:
            if self._conditional and _error_code(exc) in _PRECONDITION_CODES:
                raise ManifestConflictError(
                    f"Manifest changed concurrently while committing {manifest.deployment_id}"
                ) from exc
            raise
