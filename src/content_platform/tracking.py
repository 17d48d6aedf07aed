# -*- coding: utf-8 -*-
"""
Tracking link issuance and the view → interaction → score lifecycle.
"""
import json
import logging
import secrets
from dataclasses import dataclass

from .config import settings
from .database import Database
from .db_models import Content, LinkStatus, RecipientLabelScore, TrackingLink
from .errors import NotFoundError, ValidationError
from .notifications import NotificationQueue, utc_timestamp

logger = logging.getLogger(__name__)

PREVIEW_RECIPIENT = {
    "company_id": "system",
    "email": "preview@system.local",
    "first_name": "Preview",
    "last_name": "User",
}


@dataclass
class ScoreResult:
    """Outcome of ``record_score``."""

    score: int
    status: LinkStatus
    published: bool = False


class InteractionTracker:
    """
    Drives tracking link status and feeds the notification queue.

    Status only moves forward: ``pending → viewed → passed|failed``. Every
    status change is a single conditional UPDATE.
    """

    def __init__(self, db: Database, queue: NotificationQueue, passing_score: int | None = None):
        self.db = db
        self.queue = queue
        self.passing_score = passing_score if passing_score is not None else settings.PASSING_SCORE

    # =========================================================================
    # Links and recipients
    # =========================================================================

    async def get_tracking_link(self, tracking_link_id: str) -> TrackingLink | None:
        row = await self.db.fetch_one(
            "SELECT * FROM tracking_links WHERE id = ?", (tracking_link_id,)
        )
        return TrackingLink.model_validate(row) if row else None

    async def _require_link(self, tracking_link_id: str) -> TrackingLink:
        link = await self.get_tracking_link(tracking_link_id)
        if link is None:
            raise NotFoundError(f"Tracking link not found: {tracking_link_id}")
        return link

    async def get_content_for_link(self, tracking_link_id: str) -> Content | None:
        """The Content a tracking link points at, or None for an unknown link."""
        row = await self.db.fetch_one(
            """
            SELECT content.* FROM content
            JOIN tracking_links ON tracking_links.content_id = content.id
            WHERE tracking_links.id = ?
            """,
            (tracking_link_id,),
        )
        return Content.model_validate(row) if row else None

    async def ensure_recipient(
            self,
            recipient_id: str,
            company_id: str = "default",
            email: str = "",
            first_name: str = "",
            last_name: str = "",
    ) -> bool:
        """
        Create the recipient unless it already exists.

        Returns:
            True if the recipient was created
        """
        created = await self.db.execute(
            """
            INSERT INTO recipients (id, company_id, email, first_name, last_name)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO NOTHING
            """,
            (recipient_id, company_id, email, first_name, last_name),
        )
        if created:
            logger.info(f"Recipient created: {recipient_id}")
        return bool(created)

    async def create_tracking_link(self, recipient_id: str, content_id: str) -> TrackingLink:
        """Issue a new ``pending`` link with a random 32 hex character id."""
        tracking_link_id = secrets.token_hex(16)
        launch_url = f"/launch?tid={tracking_link_id}"

        await self.db.insert(
            "tracking_links",
            {
                "id": tracking_link_id,
                "recipient_id": recipient_id,
                "content_id": content_id,
                "launch_url": launch_url,
                "status": LinkStatus.PENDING.value,
            },
        )
        logger.info(
            "Tracking link created",
            extra={"tracking_link_id": tracking_link_id, "content_id": content_id},
        )
        return TrackingLink(
            id=tracking_link_id,
            recipient_id=recipient_id,
            content_id=content_id,
            launch_url=launch_url,
        )

    @staticmethod
    def absolute_launch_url(link: TrackingLink) -> str:
        return f"{settings.BASE_URL}{settings.BASE_PATH}{link.launch_url}"

    async def issue_preview_link(self, content_id: str) -> str:
        """
        Create a link for the reserved preview recipient and store it on the content.

        Returns:
            The absolute preview URL
        """
        recipient_id = settings.PREVIEW_RECIPIENT_ID
        await self.ensure_recipient(recipient_id, **PREVIEW_RECIPIENT)

        link = await self.create_tracking_link(recipient_id, content_id)
        preview_url = self.absolute_launch_url(link)

        await self.db.update(
            "content",
            {"content_preview": preview_url},
            "id = ?",
            (content_id,),
        )
        return preview_url

    # =========================================================================
    # Lifecycle events
    # =========================================================================

    async def record_view(self, tracking_link_id: str) -> LinkStatus:
        """
        Mark a link viewed (only from ``pending``) and queue a ``viewed`` event.

        Repeated views keep the status unchanged but are still queued.
        """
        link = await self._require_link(tracking_link_id)
        now = utc_timestamp()

        changed = await self.db.execute(
            "UPDATE tracking_links SET status = ?, viewed_at = ? WHERE id = ? AND status = ?",
            (LinkStatus.VIEWED.value, now, tracking_link_id, LinkStatus.PENDING.value),
        )
        await self.queue.append_event(link, {"event": "viewed", "timestamp": now})

        status = LinkStatus.VIEWED if changed else link.status
        logger.info(
            "View recorded",
            extra={"tracking_link_id": tracking_link_id, "status": status.value},
        )
        return status

    async def record_interaction(
            self,
            tracking_link_id: str,
            tag_name: str,
            interaction_type: str,
            interaction_value: str | None = None,
            success: bool | None = None,
    ) -> None:
        """Store an Interaction row and queue it. Link status is unchanged."""
        link = await self._require_link(tracking_link_id)
        now = utc_timestamp()

        await self.db.insert(
            "content_interactions",
            {
                "tracking_link_id": tracking_link_id,
                "tag_name": tag_name,
                "interaction_type": interaction_type,
                "interaction_value": interaction_value,
                "success": None if success is None else int(success),
                "interaction_data": json.dumps({"timestamp": now}),
            },
        )
        await self.queue.append_interaction(
            link,
            {
                "tag": tag_name,
                "type": interaction_type,
                "value": interaction_value,
                "success": success,
                "timestamp": now,
            },
        )

    async def record_score(
            self,
            tracking_link_id: str,
            score: int,
            interactions: list[dict] | None = None,
    ) -> ScoreResult:
        """
        Complete a link with a score and publish its accumulated message.

        A score at or above the passing threshold yields ``passed`` and bumps
        the recipient's counters for every distinct label of the content.

        Raises:
            ValidationError: score outside 0-100
            NotFoundError: unknown tracking link
            ExternalServiceError: publishing failed (the score stays recorded)
        """
        if not 0 <= score <= 100:
            raise ValidationError(f"Score must be between 0 and 100, got {score}")

        link = await self._require_link(tracking_link_id)
        status = LinkStatus.PASSED if score >= self.passing_score else LinkStatus.FAILED
        now = utc_timestamp()

        if link.status.rank == status.rank:
            logger.info(
                "Re-scoring completed tracking link",
                extra={"tracking_link_id": tracking_link_id, "previous": link.status.value},
            )

        await self.db.update(
            "tracking_links",
            {"score": score, "completed_at": now, "status": status.value},
            "id = ?",
            (tracking_link_id,),
        )

        if status is LinkStatus.PASSED:
            await self._increment_label_scores(link)

        await self.queue.append_event(
            link,
            {
                "event": "completed",
                "score": score,
                "status": status.value,
                "client_interactions": len(interactions or []),
                "timestamp": now,
            },
        )
        await self.queue.set_result(link, score, status.value, now)
        published = await self.queue.flush(tracking_link_id)

        logger.info(
            "Score recorded",
            extra={"tracking_link_id": tracking_link_id, "score": score, "status": status.value},
        )
        return ScoreResult(score=score, status=status, published=published)

    async def _increment_label_scores(self, link: TrackingLink) -> None:
        """One upsert for all distinct labels of the link's content."""
        await self.db.execute(
            """
            INSERT INTO recipient_tag_scores (recipient_id, tag_name, score_count, total_attempts)
            SELECT ?, tag_name, 1, 1
            FROM (SELECT DISTINCT tag_name FROM content_tags WHERE content_id = ?)
            WHERE true
            ON CONFLICT(recipient_id, tag_name) DO UPDATE SET
                score_count = score_count + 1,
                total_attempts = total_attempts + 1,
                last_updated = CURRENT_TIMESTAMP
            """,
            (link.recipient_id, link.content_id),
        )

    async def get_label_scores(self, recipient_id: str) -> list[RecipientLabelScore]:
        rows = await self.db.fetch_all(
            "SELECT recipient_id, tag_name, score_count, total_attempts "
            "FROM recipient_tag_scores WHERE recipient_id = ? ORDER BY tag_name",
            (recipient_id,),
        )
        return [RecipientLabelScore.model_validate(row) for row in rows]
