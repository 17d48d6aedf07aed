# -*- coding: utf-8 -*-
"""
Pydantic models for rows of the platform database.
"""
from datetime import datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class ContentKind(str, Enum):
    """Declared kind of an uploaded content item."""

    SCORM = "scorm"
    HTML = "html"
    RAW_HTML = "raw_html"
    LANDING = "landing"
    EMAIL = "email"
    VIDEO = "video"

    @property
    def is_archive(self) -> bool:
        return self in (ContentKind.SCORM, ContentKind.HTML)


class LinkStatus(str, Enum):
    """Tracking link lifecycle. Transitions only move forward."""

    PENDING = "pending"
    VIEWED = "viewed"
    PASSED = "passed"
    FAILED = "failed"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]


_STATUS_RANK = {
    LinkStatus.PENDING: 0,
    LinkStatus.VIEWED: 1,
    LinkStatus.PASSED: 2,
    LinkStatus.FAILED: 2,
}

LabelType = Literal["interaction-tag", "phishing-cue"]


class Content(BaseModel):
    """A stored training item."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    company_id: str
    title: str
    description: str = ""
    content_type: ContentKind
    status: Literal["processing", "succeeded", "failed"] = "processing"
    content_url: str | None = None
    content_preview: str | None = None
    tags: str | None = None
    difficulty: int | None = Field(default=None, ge=1, le=3)
    email_subject: str | None = None
    email_from_address: str | None = None
    email_attachment_filename: str | None = None

    @property
    def label_summary(self) -> list[str]:
        """Labels from the denormalised comma-separated summary column."""
        if not self.tags:
            return []
        return [tag.strip() for tag in self.tags.split(",") if tag.strip()]


class Label(BaseModel):
    """A tag or phishing cue attached to a content item."""

    content_id: str
    tag_name: str
    tag_type: LabelType = "interaction-tag"
    confidence_score: float = 1.0


class TrackingLink(BaseModel):
    """Per-recipient, per-content launch token."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    recipient_id: str
    content_id: str
    launch_url: str
    status: LinkStatus = LinkStatus.PENDING
    score: int | None = None
    created_at: datetime | None = None
    viewed_at: datetime | None = None
    completed_at: datetime | None = None


class Interaction(BaseModel):
    """Append-only record of a viewer interacting with a labelled element."""

    tracking_link_id: str
    tag_name: str
    interaction_type: str
    interaction_value: str | None = None
    success: bool | None = None


class RecipientLabelScore(BaseModel):
    """Per recipient and label counters."""

    recipient_id: str
    tag_name: str
    score_count: int = 0
    total_attempts: int = 0


class OutboundPayload(BaseModel):
    """Accumulated notification body stored in ``outbound_messages.message_data``."""

    tracking_link_id: str
    recipient_id: str
    content_id: str
    events: list[dict] = Field(default_factory=list)
    interactions: list[dict] = Field(default_factory=list)
    final_score: int | None = None
    status: str | None = None
    completed_at: str | None = None
