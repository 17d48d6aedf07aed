# -*- coding: utf-8 -*-
"""
Pydantic data models for uploads and the API.
"""
from pathlib import Path
from typing import Annotated, Literal, Union

from pydantic import BaseModel, Field

from .db_models import ContentKind

# =============================================================================
# Upload variants (one per content kind, discriminated by ``kind``)
# =============================================================================


class UploadBase(BaseModel):
    """Fields common to every upload."""

    title: str = "Untitled Content"
    description: str = ""
    company_id: str = "default"


class ScormArchiveUpload(UploadBase):
    """Zipped SCORM package. Never annotated."""

    kind: Literal["scorm"] = "scorm"
    archive_path: Path


class HtmlArchiveUpload(UploadBase):
    """Zipped static HTML site."""

    kind: Literal["html"] = "html"
    archive_path: Path


class RawHtmlUpload(UploadBase):
    """Markup pasted directly."""

    kind: Literal["raw_html"] = "raw_html"
    markup: str = Field(..., min_length=1)


class LandingUpload(UploadBase):
    """Landing page markup."""

    kind: Literal["landing"] = "landing"
    markup: str = Field(..., min_length=1)


class EmailUpload(UploadBase):
    """Phishing simulation email body plus envelope metadata."""

    kind: Literal["email"] = "email"
    markup: str = Field(..., min_length=1)
    subject: str = ""
    sender: str = ""
    attachment_name: str | None = None
    attachment_content: bytes | None = None


class VideoUpload(UploadBase):
    """Video file stored as-is."""

    kind: Literal["video"] = "video"
    source_path: Path
    filename: str


ContentUpload = Annotated[
    Union[
        ScormArchiveUpload,
        HtmlArchiveUpload,
        RawHtmlUpload,
        LandingUpload,
        EmailUpload,
        VideoUpload,
    ],
    Field(discriminator="kind"),
]


# =============================================================================
# API requests
# =============================================================================


class LaunchLinkRequest(BaseModel):
    """Issue a tracking link for a recipient."""

    recipient_id: str = Field(..., min_length=1)
    content_id: str = Field(..., min_length=1)
    company_id: str = "default"
    email: str = ""
    first_name: str = ""
    last_name: str = ""


class TrackViewRequest(BaseModel):
    tracking_link_id: str = Field(..., min_length=1)


class TrackInteractionRequest(BaseModel):
    tracking_link_id: str = Field(..., min_length=1)
    tag_name: str = Field(..., min_length=1)
    interaction_type: str = Field(..., min_length=1)
    interaction_value: str | None = None
    success: bool | None = None


class RecordScoreRequest(BaseModel):
    tracking_link_id: str = Field(..., min_length=1)
    score: int = Field(..., ge=0, le=100)
    interactions: list[dict] = Field(default_factory=list)


# =============================================================================
# API responses
# =============================================================================


class UploadResponse(BaseModel):
    """Result of an accepted upload."""

    success: bool = True
    content_id: str
    content_type: ContentKind
    path: str
    tags: list[str] = Field(default_factory=list)
    cues: list[str] = Field(default_factory=list)
    difficulty: int | None = None
    preview_url: str
    steps_applied: list[str] = Field(default_factory=list)
    attachment_filename: str | None = None
    attachment_size: int | None = None


class LaunchLinkResponse(BaseModel):
    success: bool = True
    tracking_link_id: str
    launch_url: str
    content: dict


class TrackingResponse(BaseModel):
    success: bool = True
    message: str


class ScoreResponse(BaseModel):
    success: bool = True
    score: int
    status: str
    published: bool = False


class LabelResponse(BaseModel):
    tag_name: str
    tag_type: str
    confidence_score: float


class ErrorResponse(BaseModel):
    """Structured failure body."""

    error: str
    message: str


class HealthResponse(BaseModel):
    """Health check response schema."""

    status: str
    version: str
    database_ready: bool = False
