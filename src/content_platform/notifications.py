# -*- coding: utf-8 -*-
"""
Outbound notification queue for tracking link events.

Every tracking link accumulates its events into at most one unsent row of
``outbound_messages``. Rows are seeded with an upsert against the partial
unique index and grown with SQLite JSON functions in a single UPDATE, so
no payload is ever loaded, modified and written back. A per-link
``asyncio.Lock`` additionally orders appends against ``flush``.

``flush`` publishes the accumulated payload and marks the row sent only
after the publisher acknowledged it.
"""
import asyncio
import functools
import json
import logging
from collections import Counter
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Protocol

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .config import settings
from .database import Database
from .db_models import OutboundPayload, TrackingLink
from .errors import ExternalServiceError

logger = logging.getLogger(__name__)


def utc_timestamp() -> str:
    """Current UTC time as ``YYYY-MM-DDTHH:MM:SSZ``."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class Publisher(Protocol):
    """Delivers one accumulated payload. Raises on failure."""

    async def publish_interaction_event(
            self,
            tracking_link_id: str,
            recipient_id: str,
            content_id: str,
            interactions: list[dict],
            final_score: int | None = None,
    ) -> str:
        ...


class SnsPublisher:
    """Publishes interaction events to an AWS SNS topic."""

    def __init__(self, topic_arn: str | None = None, region: str | None = None, client=None):
        self.topic_arn = topic_arn if topic_arn is not None else settings.SNS_TOPIC_ARN
        self.region = region or settings.AWS_REGION
        self._client = client

    def _sns(self):
        if self._client is None:
            self._client = boto3.client("sns", region_name=self.region)
        return self._client

    async def publish_interaction_event(
            self,
            tracking_link_id: str,
            recipient_id: str,
            content_id: str,
            interactions: list[dict],
            final_score: int | None = None,
    ) -> str:
        """
        Publish one message; boto3 is blocking, so the call runs in a worker thread.

        Returns:
            The SNS MessageId

        Raises:
            ExternalServiceError: topic not configured or publish failed
        """
        if not self.topic_arn:
            raise ExternalServiceError("SNS_TOPIC_ARN is not configured")

        message = {
            "tracking_link_id": tracking_link_id,
            "recipient_id": recipient_id,
            "content_id": content_id,
            "interactions": interactions,
            "final_score": final_score,
            "timestamp": utc_timestamp(),
        }
        publish = functools.partial(
            self._sns().publish,
            TopicArn=self.topic_arn,
            Message=json.dumps(message),
            MessageAttributes={
                "event_type": {"DataType": "String", "StringValue": "content_interaction"},
            },
        )

        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(None, publish)
        except (BotoCoreError, ClientError) as e:
            raise ExternalServiceError(f"SNS publish failed: {e}") from e

        message_id = response.get("MessageId", "")
        logger.info(
            "Published interaction event",
            extra={"tracking_link_id": tracking_link_id, "message_id": message_id},
        )
        return message_id


class NotificationQueue:
    """Per-link outbox with at-most-once publishing."""

    def __init__(self, db: Database, publisher: Publisher):
        self.db = db
        self.publisher = publisher
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: Counter[str] = Counter()

    @asynccontextmanager
    async def _link_lock(self, tracking_link_id: str):
        """Hold the link's lock; the entry is dropped once nobody holds or awaits it."""
        lock = self._locks.setdefault(tracking_link_id, asyncio.Lock())
        self._lock_users[tracking_link_id] += 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[tracking_link_id] -= 1
            if not self._lock_users[tracking_link_id]:
                del self._lock_users[tracking_link_id]
                del self._locks[tracking_link_id]

    async def _seed(self, link: TrackingLink) -> None:
        """Create the unsent row for ``link`` unless one already exists."""
        payload = OutboundPayload(
            tracking_link_id=link.id,
            recipient_id=link.recipient_id,
            content_id=link.content_id,
        )
        await self.db.execute(
            """
            INSERT INTO outbound_messages (tracking_link_id, message_data, sent)
            VALUES (?, ?, 0)
            ON CONFLICT(tracking_link_id) WHERE sent = 0 DO NOTHING
            """,
            (link.id, payload.model_dump_json()),
        )

    async def _append(self, link: TrackingLink, json_path: str, entry: dict) -> None:
        async with self._link_lock(link.id):
            await self._seed(link)
            await self.db.execute(
                """
                UPDATE outbound_messages
                SET message_data = json_insert(message_data, ?, json(?)),
                    updated_at = CURRENT_TIMESTAMP
                WHERE tracking_link_id = ? AND sent = 0
                """,
                (json_path, json.dumps(entry), link.id),
            )

    async def append_event(self, link: TrackingLink, event: dict) -> None:
        """Append to the ordered ``events`` list of the link's unsent message."""
        await self._append(link, "$.events[#]", event)

    async def append_interaction(self, link: TrackingLink, interaction: dict) -> None:
        """Append to the ordered ``interactions`` list of the link's unsent message."""
        await self._append(link, "$.interactions[#]", interaction)

    async def set_result(self, link: TrackingLink, score: int, status: str, completed_at: str) -> None:
        """Record the final score and status on the link's unsent message."""
        async with self._link_lock(link.id):
            await self._seed(link)
            await self.db.execute(
                """
                UPDATE outbound_messages
                SET message_data = json_set(
                        message_data,
                        '$.final_score', ?,
                        '$.status', ?,
                        '$.completed_at', ?
                    ),
                    updated_at = CURRENT_TIMESTAMP
                WHERE tracking_link_id = ? AND sent = 0
                """,
                (score, status, completed_at, link.id),
            )

    async def get_pending(self, tracking_link_id: str) -> OutboundPayload | None:
        """The accumulated payload of the unsent message, if any."""
        row = await self.db.fetch_one(
            "SELECT message_data FROM outbound_messages WHERE tracking_link_id = ? AND sent = 0",
            (tracking_link_id,),
        )
        if row is None:
            return None
        return OutboundPayload.model_validate_json(row["message_data"])

    async def flush(self, tracking_link_id: str) -> bool:
        """
        Publish the unsent message of a link and mark it sent.

        Returns:
            True if a message was published, False if there was nothing to send

        Raises:
            ExternalServiceError: the publisher failed; the message stays unsent
        """
        async with self._link_lock(tracking_link_id):
            row = await self.db.fetch_one(
                "SELECT id, message_data FROM outbound_messages "
                "WHERE tracking_link_id = ? AND sent = 0",
                (tracking_link_id,),
            )
            if row is None:
                logger.debug(f"Nothing to flush for tracking link {tracking_link_id}")
                return False

            payload = OutboundPayload.model_validate_json(row["message_data"])
            try:
                await self.publisher.publish_interaction_event(
                    payload.tracking_link_id,
                    payload.recipient_id,
                    payload.content_id,
                    payload.interactions,
                    payload.final_score,
                )
            except ExternalServiceError:
                logger.error(
                    "Failed to publish outbound message",
                    extra={"tracking_link_id": tracking_link_id},
                )
                raise

            await self.db.execute(
                "UPDATE outbound_messages SET sent = 1, sent_at = CURRENT_TIMESTAMP "
                "WHERE id = ? AND sent = 0",
                (row["id"],),
            )
            logger.info(
                "Outbound message sent",
                extra={
                    "tracking_link_id": tracking_link_id,
                    "events": len(payload.events),
                    "interactions": len(payload.interactions),
                },
            )
            return True
