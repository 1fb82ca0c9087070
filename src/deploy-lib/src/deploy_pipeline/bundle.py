"""
deploy_pipeline.bundle — Archive bucket access and in-memory bundle extraction.

Archives are always read and deleted by explicit key + version id.
"""

from __future__ import annotations

import io
import mimetypes
import posixpath
import zipfile
import zlib
from typing import Any
from urllib.parse import unquote_plus

from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from deploy_pipeline.exceptions import ArchiveDataError
from deploy_pipeline.models import ArchiveRef, BundleFile

logger = Logger(service="deploy-pipeline")

DEFAULT_CONTENT_TYPE = "application/octet-stream"

# GetObject codes for a version that was already consumed and deleted
_RELEASED_CODES = {"NoSuchVersion", "NoSuchKey", "404"}

# Types mimetypes gets wrong or misses on minimal Lambda images
_EXTRA_TYPES = {
    ".js": "text/javascript",
    ".mjs": "text/javascript",
    ".json": "application/json",
    ".map": "application/json",
    ".svg": "image/svg+xml",
    ".wasm": "application/wasm",
    ".webmanifest": "application/manifest+json",
    ".woff": "font/woff",
    ".woff2": "font/woff2",
}


def guess_content_type(path: str) -> str:
    ext = posixpath.splitext(path)[1].lower()
    if ext in _EXTRA_TYPES:
        return _EXTRA_TYPES[ext]
    content_type, _ = mimetypes.guess_type(path)
    return content_type or DEFAULT_CONTENT_TYPE


def normalize_member_path(name: str) -> str:
    """Return the asset key for a zip member, or raise on unsafe paths."""
    candidate = name.replace("\\", "/")
    if candidate.startswith("/") or (len(candidate) > 1 and candidate[1] == ":"):
        raise ArchiveDataError(f"Archive member has an absolute path: {name!r}")
    if ".." in candidate.split("/"):
        raise ArchiveDataError(f"Archive member escapes the bundle root: {name!r}")
    normalized = posixpath.normpath(candidate)
    if normalized in {"", "."}:
        raise ArchiveDataError(f"Archive member has an empty path: {name!r}")
    return normalized


def archive_refs_from_event(event: dict[str, Any]) -> list[ArchiveRef]:
    """Pull pinned archive references out of an S3 ObjectCreated notification."""
    refs: list[ArchiveRef] = []
    for record in event.get("Records", []):
        if record.get("eventSource") != "aws:s3":
            continue
        if not str(record.get("eventName", "")).startswith("ObjectCreated"):
            continue
        s3 = record.get("s3", {})
        bucket = s3.get("bucket", {}).get("name", "")
        obj = s3.get("object", {})
        key = unquote_plus(obj.get("key", ""))
        version_id = obj.get("versionId")
        if not version_id:
            raise ArchiveDataError(
                "ObjectCreated event carries no versionId; archive bucket must be versioned",
                archive_key=key,
            )
        refs.append(ArchiveRef(bucket=bucket, key=key, version_id=version_id))
    return refs


def extract_bundle(content: bytes, *, archive: ArchiveRef | None = None) -> list[BundleFile]:
    """Decompress a zip archive in memory into BundleFiles.

    Directory entries are skipped. Raises ArchiveDataError for anything that
    is not a readable zip of at least one file.
    """
    key = archive.key if archive else ""
    version_id = archive.version_id if archive else ""
    try:
        zf = zipfile.ZipFile(io.BytesIO(content))
    except zipfile.BadZipFile as exc:
        raise ArchiveDataError(
            f"Archive is not a valid zip file: {exc}", archive_key=key, version_id=version_id
        ) from exc

    files: dict[str, BundleFile] = {}
    with zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            try:
                path = normalize_member_path(info.filename)
            except ArchiveDataError as exc:
                raise ArchiveDataError(str(exc), archive_key=key, version_id=version_id) from exc
            if path in files:
                raise ArchiveDataError(
                    f"Archive has more than one member for {path!r}",
                    archive_key=key,
                    version_id=version_id,
                )
            try:
                body = zf.read(info)
            except (zipfile.BadZipFile, zlib.error, OSError) as exc:
                raise ArchiveDataError(
                    f"Archive member {info.filename!r} is corrupt: {exc}",
                    archive_key=key,
                    version_id=version_id,
                ) from exc
            files[path] = BundleFile(path=path, body=body, content_type=guess_content_type(path))

    if not files:
        raise ArchiveDataError("Archive contains no files", archive_key=key, version_id=version_id)
    return [files[path] for path in sorted(files)]


class ArchiveStore:
    """Versioned bucket holding uploaded deployment bundles."""

    def __init__(self, s3_client: Any) -> None:
        self._s3 = s3_client

    def fetch(self, ref: ArchiveRef) -> bytes | None:
        """Read the pinned version. Returns None if that version was already released."""
        try:
            response = self._s3.get_object(
                Bucket=ref.bucket, Key=ref.key, VersionId=ref.version_id
            )
        except ClientError as exc:
            if str(exc.response.get("Error", {}).get("Code", "")) in _RELEASED_CODES:
                return None
            raise
        return response["Body"].read()

    def release(self, ref: ArchiveRef) -> None:
        """Delete exactly the consumed version; a newer upload is left alone."""
        self._s3.delete_object(Bucket=ref.bucket, Key=ref.key, VersionId=ref.version_id)
        logger.info(
            "Archive released",
            extra={"archive_key": ref.key, "version_id": ref.version_id},
        )
