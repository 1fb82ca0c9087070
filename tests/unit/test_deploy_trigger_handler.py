from __future__ import annotations

import io
import json
import sys
import zipfile
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import boto3
import pytest
from moto import mock_aws

# Add project root and deploy-lib to path
sys.path.insert(0, str(Path(__file__).resolve().parents[2]))
sys.path.insert(0, str(Path(__file__).resolve().parents[2] / "src" / "deploy-lib" / "src"))

from deploy_pipeline import config
from deploy_pipeline.cdn import CloudFrontInvalidator
from deploy_pipeline.exceptions import ConfigurationError
from src.deploy_trigger import handler as handler_module

_REGION = "eu-west-2"
_ARCHIVE_BUCKET = "platform-deploy-archives"
_ASSET_BUCKET = "platform-deploy-assets"


class FakeLambdaContext:
    function_name = "deploy-trigger"
    memory_limit_in_mb = 512
    invoked_function_arn = "arn:aws:lambda:eu-west-2:111111111111:function:deploy-trigger"
    aws_request_id = "req-123"


def _zip(files: dict[str, bytes]) -> bytes:
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buffer.getvalue()


def _s3_event(key: str, version_id: str | None) -> dict[str, Any]:
    obj: dict[str, Any] = {"key": key, "size": 1}
    if version_id is not None:
        obj["versionId"] = version_id
    return {
        "Records": [
            {
                "eventSource": "aws:s3",
                "eventName": "ObjectCreated:Put",
                "s3": {"bucket": {"name": _ARCHIVE_BUCKET}, "object": obj},
            }
        ]
    }


def _sqs_record(message_id: str, body: str, receive_count: int = 1) -> dict[str, Any]:
    return {
        "eventSource": "aws:sqs",
        "messageId": message_id,
        "receiptHandle": f"rh-{message_id}",
        "body": body,
        "attributes": {"ApproximateReceiveCount": str(receive_count)},
    }


@pytest.fixture
def cloudfront() -> MagicMock:
    client = MagicMock()
    client.create_invalidation.return_value = {"Invalidation": {"Id": "I-1"}}
    return client


@pytest.fixture
def worker_env(monkeypatch: pytest.MonkeyPatch, cloudfront: MagicMock):
    """Moto-backed buckets and queues, worker env vars, fresh cached components."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")  # pragma: allowlist secret
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")  # pragma: allowlist secret
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", _REGION)
    monkeypatch.setenv("AWS_REGION", _REGION)
    monkeypatch.setenv("POWERTOOLS_TRACE_DISABLED", "1")

    with mock_aws():
        s3 = boto3.client("s3", region_name=_REGION)
        sqs = boto3.client("sqs", region_name=_REGION)
        for bucket in (_ARCHIVE_BUCKET, _ASSET_BUCKET):
            s3.create_bucket(
                Bucket=bucket, CreateBucketConfiguration={"LocationConstraint": _REGION}
            )
        s3.put_bucket_versioning(
            Bucket=_ARCHIVE_BUCKET, VersioningConfiguration={"Status": "Enabled"}
        )
        queue_url = sqs.create_queue(
            QueueName="platform-invalidations", Attributes={"VisibilityTimeout": "0"}
        )["QueueUrl"]
        dlq_url = sqs.create_queue(QueueName="platform-invalidations-dlq")["QueueUrl"]

        monkeypatch.setenv("ASSET_BUCKET", _ASSET_BUCKET)
        monkeypatch.setenv("EXPIRY_GRACE_DAYS", "7")
        monkeypatch.setenv("DISTRIBUTION_ID", "E123EXAMPLE")
        monkeypatch.setenv("INVALIDATION_QUEUE_URL", queue_url)
        monkeypatch.setenv("DEAD_LETTER_QUEUE_URL", dlq_url)
        monkeypatch.setenv("MAX_RECEIVE_COUNT", "3")
        monkeypatch.setattr(
            handler_module,
            "CloudFrontInvalidator",
            lambda _client, distribution_id, **kwargs: CloudFrontInvalidator(
                cloudfront, distribution_id, **kwargs
            ),
        )
        monkeypatch.setattr(handler_module, "_components", None)
        config.reset_settings()
        yield {"s3": s3, "sqs": sqs, "queue_url": queue_url, "dlq_url": dlq_url}
        config.reset_settings()


def _bodies(sqs: Any, queue_url: str) -> list[str]:
    response = sqs.receive_message(QueueUrl=queue_url, MaxNumberOfMessages=10)
    return [m["Body"] for m in response.get("Messages", [])]


def test_archive_event_publishes_and_signals(worker_env: dict[str, Any]) -> None:
    s3 = worker_env["s3"]
    version_id = s3.put_object(
        Bucket=_ARCHIVE_BUCKET,
        Key="site.zip",
        Body=_zip({"index.html": b"<h1>hi</h1>", "app.js": b"1"}),
    )["VersionId"]

    result = handler_module.handler(_s3_event("site.zip", version_id), FakeLambdaContext())

    assert result["status"] == "processed"
    [deployment] = result["deployments"]
    assert deployment["deploymentId"] == f"site@{version_id}"
    assert deployment["state"] == "archive_released"
    assert deployment["published"] == 2

    assert s3.get_object(Bucket=_ASSET_BUCKET, Key="index.html")["Body"].read() == b"<h1>hi</h1>"
    [body] = _bodies(worker_env["sqs"], worker_env["queue_url"])
    assert sorted(json.loads(body)["paths"]) == ["/app.js", "/index.html"]


def test_redelivered_archive_event_is_a_no_op(worker_env: dict[str, Any]) -> None:
    s3 = worker_env["s3"]
    version_id = s3.put_object(
        Bucket=_ARCHIVE_BUCKET, Key="site.zip", Body=_zip({"index.html": b"v1"})
    )["VersionId"]
    event = _s3_event("site.zip", version_id)

    first = handler_module.handler(event, FakeLambdaContext())
    second = handler_module.handler(event, FakeLambdaContext())

    assert first["deployments"][0]["state"] == "archive_released"
    assert second == {
        "status": "processed",
        "deployments": [
            {
                "deploymentId": f"site@{version_id}",
                "state": "already_released",
                "published": 0,
                "expired": 0,
            }
        ],
    }
    assert len(_bodies(worker_env["sqs"], worker_env["queue_url"])) == 1
    assert _bodies(worker_env["sqs"], worker_env["dlq_url"]) == []


def test_cold_start_writes_the_write_check_marker(worker_env: dict[str, Any]) -> None:
    handler_module.handler({"Records": []}, FakeLambdaContext())
    marker = worker_env["s3"].get_object(
        Bucket=_ASSET_BUCKET, Key=".deploy/manifest.json.write-check"
    )
    assert marker["Body"].read() == b""


def test_archive_without_version_goes_to_dead_letter_queue(worker_env: dict[str, Any]) -> None:
    result = handler_module.handler(_s3_event("site.zip", None), FakeLambdaContext())

    assert result == {"status": "dead_lettered", "deployments": []}
    [body] = _bodies(worker_env["sqs"], worker_env["dlq_url"])
    assert "versionId" in json.loads(body)["reason"]


def test_corrupt_archive_goes_to_dead_letter_queue(worker_env: dict[str, Any]) -> None:
    s3 = worker_env["s3"]
    version_id = s3.put_object(Bucket=_ARCHIVE_BUCKET, Key="bad.zip", Body=b"not a zip")[
        "VersionId"
    ]

    result = handler_module.handler(_s3_event("bad.zip", version_id), FakeLambdaContext())

    assert result["deployments"] == [
        {"deploymentId": f"bad@{version_id}", "state": "dead_lettered"}
    ]
    [body] = _bodies(worker_env["sqs"], worker_env["dlq_url"])
    assert json.loads(body)["payload"]["key"] == "bad.zip"
    assert _bodies(worker_env["sqs"], worker_env["queue_url"]) == []


def test_sqs_batch_issues_one_invalidation(
    worker_env: dict[str, Any], cloudfront: MagicMock
) -> None:
    event = {
        "Records": [
            _sqs_record("m-1", json.dumps({"paths": ["/index.html"], "coalescing_key": "a"})),
            _sqs_record("m-2", json.dumps({"paths": ["/app.js"], "coalescing_key": "b"})),
        ]
    }

    result = handler_module.handler(event, FakeLambdaContext())

    assert result == {"batchItemFailures": []}
    cloudfront.create_invalidation.assert_called_once()
    batch = cloudfront.create_invalidation.call_args.kwargs["InvalidationBatch"]
    assert batch["Paths"]["Items"] == ["/app.js", "/index.html"]


def test_malformed_record_reported_as_item_failure(
    worker_env: dict[str, Any], cloudfront: MagicMock
) -> None:
    event = {
        "Records": [
            _sqs_record("m-1", json.dumps({"paths": ["/index.html"]})),
            _sqs_record("m-bad", "{not json"),
        ]
    }

    result = handler_module.handler(event, FakeLambdaContext())

    assert result == {"batchItemFailures": [{"itemIdentifier": "m-bad"}]}
    cloudfront.create_invalidation.assert_called_once()


def test_malformed_record_dead_lettered_after_max_receives(
    worker_env: dict[str, Any], cloudfront: MagicMock
) -> None:
    event = {"Records": [_sqs_record("m-bad", "{not json", receive_count=3)]}

    result = handler_module.handler(event, FakeLambdaContext())

    assert result == {"batchItemFailures": []}
    cloudfront.create_invalidation.assert_not_called()
    assert len(_bodies(worker_env["sqs"], worker_env["dlq_url"])) == 1


def test_unknown_event_source_is_ignored(worker_env: dict[str, Any]) -> None:
    result = handler_module.handler({"Records": []}, FakeLambdaContext())
    assert result == {"status": "ignored"}


def test_components_are_cached_across_invocations(worker_env: dict[str, Any]) -> None:
    first = handler_module.get_components()
    assert handler_module.get_components() is first


def test_missing_asset_bucket_is_a_configuration_error(
    worker_env: dict[str, Any], monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setenv("ASSET_BUCKET", "bucket-that-does-not-exist")
    with pytest.raises(ConfigurationError):
        handler_module.handler({"Records": []}, FakeLambdaContext())
