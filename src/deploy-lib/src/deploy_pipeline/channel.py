"""
deploy_pipeline.channel — The invalidation channel (SNS topic fanning out to SQS).

The worker is both producer and consumer here: it publishes one signal per
deployment and drains the same queue in batches. Debounce comes from the
queue's visibility timeout, not from anything in this module.
"""

from __future__ import annotations

import json
from typing import Any

from aws_lambda_powertools import Logger

from deploy_pipeline.models import MAX_RECEIVE_BATCH, ChannelMessage, InvalidationSignal

logger = Logger(service="deploy-pipeline")

# Long-poll ceiling for ReceiveMessage
_MAX_WAIT_SECONDS = 20


class InvalidationChannel:
    def __init__(
        self,
        *,
        sns_client: Any = None,
        sqs_client: Any = None,
        topic_arn: str | None = None,
        queue_url: str | None = None,
        dead_letter_queue_url: str | None = None,
    ) -> None:
        if not topic_arn and not queue_url:
            raise ValueError("InvalidationChannel needs a topic ARN or a queue URL")
        self._sns = sns_client
        self._sqs = sqs_client
        self.topic_arn = topic_arn
        self.queue_url = queue_url
        self.dead_letter_queue_url = dead_letter_queue_url

    def send(self, signal: InvalidationSignal) -> str:
        """Publish a signal; goes through the topic when one is configured."""
        body = signal.to_json()
        if self.topic_arn:
            response = self._sns.publish(
                TopicArn=self.topic_arn,
                Message=body,
                MessageAttributes={
                    "coalescing_key": {
                        "DataType": "String",
                        "StringValue": signal.coalescing_key or "-",
                    }
                },
            )
        else:
            response = self._sqs.send_message(QueueUrl=self.queue_url, MessageBody=body)
        message_id = str(response.get("MessageId", ""))
        logger.info(
            "Invalidation signal sent",
            extra={
                "coalescing_key": signal.coalescing_key,
                "path_count": len(signal.cdn_paths),
                "message_id": message_id,
            },
        )
        return message_id

    def receive(
        self, *, max_messages: int = MAX_RECEIVE_BATCH, wait_seconds: int = _MAX_WAIT_SECONDS
    ) -> list[ChannelMessage]:
        if not self.queue_url:
            raise ValueError("Receiving requires INVALIDATION_QUEUE_URL")
        response = self._sqs.receive_message(
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=min(max_messages, MAX_RECEIVE_BATCH),
            WaitTimeSeconds=min(wait_seconds, _MAX_WAIT_SECONDS),
            AttributeNames=["ApproximateReceiveCount"],
        )
        return [ChannelMessage.from_sqs_message(m) for m in response.get("Messages", [])]

    def delete(self, messages: list[ChannelMessage]) -> list[str]:
        """Acknowledge messages. Returns the ids the queue refused to delete."""
        if not self.queue_url:
            raise ValueError("Deleting requires INVALIDATION_QUEUE_URL")
        failed: list[str] = []
        for start in range(0, len(messages), MAX_RECEIVE_BATCH):
            chunk = messages[start : start + MAX_RECEIVE_BATCH]
            entries = [
                {"Id": str(i), "ReceiptHandle": m.receipt_handle} for i, m in enumerate(chunk)
            ]
            response = self._sqs.delete_message_batch(QueueUrl=self.queue_url, Entries=entries)
            for failure in response.get("Failed", []):
                failed.append(chunk[int(failure["Id"])].message_id)
        if failed:
            logger.warning("Some messages were not deleted", extra={"message_ids": failed})
        return failed

    def dead_letter(self, message: ChannelMessage, reason: str) -> None:
        """Forward a message that will never succeed to the dead-letter queue."""
        self.dead_letter_payload(
            {"message_id": message.message_id, "body": message.body}, reason=reason
        )

    def dead_letter_payload(self, payload: dict[str, Any], *, reason: str) -> None:
        if not self.dead_letter_queue_url:
            raise ValueError("No dead-letter queue configured")
        self._sqs.send_message(
            QueueUrl=self.dead_letter_queue_url,
            MessageBody=json.dumps({"reason": reason, "payload": payload}),
        )
        logger.error("Routed to dead-letter queue", extra={"reason": reason})
