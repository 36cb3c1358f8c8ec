"""
SQS access for the pipeline queue.

Messages carry ``{"runId": "..."}`` and are delivered at least once. Receives
use long polling so an idle worker blocks in SQS instead of spinning.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import boto3

logger = logging.getLogger(__name__)

SQS_MAX_BATCH = 10
SQS_MAX_WAIT_SECONDS = 20


@dataclass(frozen=True)
class QueueEnvelope:
    body: str
    receipt_handle: str
    message_id: str = ""


class SqsQueue:
    def __init__(self, queue_url: str, region: str, client=None):
        if not queue_url:
            raise ValueError("AWS_SQS_QUEUE_URL is not configured")
        self.queue_url = queue_url
        self._client = client or boto3.client("sqs", region_name=region)

    async def send_message(self, body: Dict[str, Any]) -> str:
        response = await asyncio.to_thread(
            self._client.send_message,
            QueueUrl=self.queue_url,
            MessageBody=json.dumps(body),
        )
        message_id = response.get("MessageId", "")
        logger.info(f"Message sent to SQS: {message_id}")
        return message_id

    async def receive(self, max_messages: int = 1, wait_time_seconds: Optional[int] = None) -> List[QueueEnvelope]:
        """
        Long-poll for up to ``max_messages`` messages.

        Both arguments are clamped to what SQS accepts (1-10 messages, 0-20 s).
        """
        count = max(1, min(max_messages, SQS_MAX_BATCH))
        wait = SQS_MAX_WAIT_SECONDS if wait_time_seconds is None else wait_time_seconds
        wait = max(0, min(wait, SQS_MAX_WAIT_SECONDS))
        response = await asyncio.to_thread(
            self._client.receive_message,
            QueueUrl=self.queue_url,
            MaxNumberOfMessages=count,
            WaitTimeSeconds=wait,
        )
        return [
            QueueEnvelope(
                body=message.get("Body", ""),
                receipt_handle=message["ReceiptHandle"],
                message_id=message.get("MessageId", ""),
            )
            for message in response.get("Messages", [])
        ]

    async def delete(self, receipt_handle: str) -> None:
        await asyncio.to_thread(
            self._client.delete_message,
            QueueUrl=self.queue_url,
            ReceiptHandle=receipt_handle,
        )
        logger.info("Message deleted from SQS")
