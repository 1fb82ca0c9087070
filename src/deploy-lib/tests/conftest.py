"""Shared fixtures for deploy_pipeline tests: moto-backed buckets and queues."""

from __future__ import annotations

import io
import zipfile
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

import boto3
import pytest
from moto import mock_aws

REGION = "eu-west-2"
ARCHIVE_BUCKET = "platform-deploy-archives"
ASSET_BUCKET = "platform-deploy-assets"
QUEUE_NAME = "platform-invalidations"
DLQ_NAME = "platform-invalidations-dlq"
TOPIC_NAME = "platform-invalidations-topic"


@pytest.fixture(autouse=True)
def aws_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Set minimal AWS env vars required by boto3 and moto."""
    monkeypatch.setenv("AWS_REGION", REGION)
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")  # pragma: allowlist secret
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")


@dataclass
class AwsFixture:
    s3: Any
    sqs: Any
    sns: Any
    queue_url: str
    dlq_url: str
    topic_arn: str

    def upload_archive(self, key: str, body: bytes) -> str:
        response = self.s3.put_object(Bucket=ARCHIVE_BUCKET, Key=key, Body=body)
        return str(response["VersionId"])

    def queue_bodies(self, queue_url: str | None = None) -> list[str]:
        response = self.sqs.receive_message(
            QueueUrl=queue_url or self.queue_url,
            MaxNumberOfMessages=10,
            WaitTimeSeconds=0,
        )
        return [m["Body"] for m in response.get("Messages", [])]


@pytest.fixture
def aws() -> Iterator[AwsFixture]:
    """Versioned archive bucket, asset bucket, invalidation queue + DLQ, topic."""
    with mock_aws():
        s3 = boto3.client("s3", region_name=REGION)
        sqs = boto3.client("sqs", region_name=REGION)
        sns = boto3.client("sns", region_name=REGION)
        for bucket in (ARCHIVE_BUCKET, ASSET_BUCKET):
            s3.create_bucket(
                Bucket=bucket,
                CreateBucketConfiguration={"LocationConstraint": REGION},
            )
        s3.put_bucket_versioning(
            Bucket=ARCHIVE_BUCKET,
            VersioningConfiguration={"Status": "Enabled"},
        )
        # Zero visibility timeout makes redelivery observable without sleeping
        queue_url = sqs.create_queue(QueueName=QUEUE_NAME, Attributes={"VisibilityTimeout": "0"})[
            "QueueUrl"
        ]
        dlq_url = sqs.create_queue(QueueName=DLQ_NAME)["QueueUrl"]
        topic_arn = sns.create_topic(Name=TOPIC_NAME)["TopicArn"]
        yield AwsFixture(
            s3=s3,
            sqs=sqs,
            sns=sns,
            queue_url=queue_url,
            dlq_url=dlq_url,
            topic_arn=topic_arn,
        )


@pytest.fixture
def make_zip() -> Callable[[dict[str, bytes]], bytes]:
    """Build an in-memory zip from {member name: content}."""

    def _make(files: dict[str, bytes]) -> bytes:
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as zf:
            for name, content in files.items():
                zf.writestr(name, content)
        return buffer.getvalue()

    return _make
