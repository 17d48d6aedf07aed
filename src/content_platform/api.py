# -*- coding: utf-8 -*-
"""
FastAPI application for the content platform.

Thin controller layer: handlers parse requests, delegate to the services
held in ``app.state.services`` and map ``ContentPlatformError`` subclasses
to structured JSON errors.
"""
import asyncio
import logging
import shutil
import tempfile
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path

from fastapi import Depends, FastAPI, File, Form, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.staticfiles import StaticFiles
from pydantic import TypeAdapter
from starlette.exceptions import HTTPException
from starlette.responses import Response
from starlette.types import Scope
from pydantic import ValidationError as SchemaError

from . import __version__
from .annotation import AnnotationClient
from .assets import AssetMirror
from .config import settings
from .database import Database
from .db_models import ContentKind, RecipientLabelScore
from .errors import ContentPlatformError, NotFoundError, ValidationError
from .fetcher import AssetFetcher
from .logging_config import setup_logging
from .middleware import RequestIDMiddleware
from .models import (
    ContentUpload,
    ErrorResponse,
    HealthResponse,
    LabelResponse,
    LaunchLinkRequest,
    LaunchLinkResponse,
    RecordScoreRequest,
    ScoreResponse,
    TrackingResponse,
    TrackInteractionRequest,
    TrackViewRequest,
    UploadResponse,
)
from .notifications import NotificationQueue, Publisher, SnsPublisher
from .pipeline import ContentPipeline
from .tracking import InteractionTracker

# Setup structured logging
setup_logging()
logger = logging.getLogger(__name__)

_upload_adapter = TypeAdapter(ContentUpload)


@dataclass
class Services:
    """Everything a request handler needs, wired once per process."""

    db: Database
    fetcher: AssetFetcher
    queue: NotificationQueue
    tracker: InteractionTracker
    pipeline: ContentPipeline

    @classmethod
    def create(
            cls,
            db: Database | None = None,
            annotator: AnnotationClient | None = None,
            fetcher: AssetFetcher | None = None,
            publisher: Publisher | None = None,
            content_dir: Path | None = None,
    ) -> "Services":
        db = db or Database(settings.DATABASE_PATH)
        fetcher = fetcher or AssetFetcher()
        queue = NotificationQueue(db, publisher or SnsPublisher())
        tracker = InteractionTracker(db, queue)
        pipeline = ContentPipeline(
            db,
            annotator or AnnotationClient(),
            AssetMirror(fetcher, content_dir=content_dir),
            tracker,
            content_dir=content_dir,
        )
        return cls(db=db, fetcher=fetcher, queue=queue, tracker=tracker, pipeline=pipeline)

    async def start(self) -> None:
        await self.db.initialize()
        await self.fetcher.start()

    async def stop(self) -> None:
        await self.fetcher.stop()
        await self.db.close()


def get_services(request: Request) -> Services:
    return request.app.state.services


class PublishedContentFiles(StaticFiles):
    """
    Static files of content items whose processing succeeded.

    The first path segment is the content id; items still processing, failed
    or unknown answer 404 even when their directory exists.
    """

    def serve_from(self, directory: Path) -> None:
        self.directory = directory
        self.all_directories = self.get_directories(directory, None)

    async def get_response(self, path: str, scope: Scope) -> Response:
        content_id = Path(path).parts[0] if path not in ("", ".") else ""
        services: Services = scope["app"].state.services
        row = await services.db.fetch_one(
            "SELECT 1 FROM content WHERE id = ? AND status = 'succeeded' "
            "AND content_url IS NOT NULL",
            (content_id,),
        )
        if row is None:
            raise HTTPException(status_code=404)
        return await super().get_response(path, scope)


# noinspection PyUnusedLocal
@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Application lifecycle management."""
    logger.info("Starting content platform", extra={"version": __version__})

    # Tests install their own services before startup
    services = getattr(_app.state, "services", None) or Services.create()
    await services.start()
    _app.state.services = services
    content_files.serve_from(services.pipeline.content_dir)

    yield

    logger.info("Shutting down content platform")
    await services.stop()


app = FastAPI(
    title="Content Platform",
    description="Training content ingestion, annotation and interaction tracking",
    version=__version__,
    lifespan=lifespan,
)

# Middleware stack (order matters: last added = first executed)
app.add_middleware(GZipMiddleware, minimum_size=settings.GZIP_MIN_SIZE)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=settings.CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_middleware(RequestIDMiddleware)

content_files = PublishedContentFiles(directory=settings.CONTENT_DIR, check_dir=False)
app.mount(settings.PUBLIC_CONTENT_PATH, content_files, name="content")


# =============================================================================
# Error handling
# =============================================================================


def _error_response(status_code: int, category: str, message: str) -> JSONResponse:
    body = ErrorResponse(error=category, message=message)
    return JSONResponse(status_code=status_code, content=body.model_dump())


@app.exception_handler(ContentPlatformError)
async def platform_error_handler(request: Request, exc: ContentPlatformError) -> JSONResponse:
    level = logging.ERROR if exc.status_code >= 500 else logging.WARNING
    logger.log(
        level,
        f"Request failed: {exc}",
        extra={"path": request.url.path, "category": exc.category},
    )
    message = str(exc) if settings.DEBUG else exc.public_message
    return _error_response(exc.status_code, exc.category, message)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.warning("Invalid request", extra={"path": request.url.path})
    message = str(exc.errors()) if settings.DEBUG else ValidationError.public_message
    return _error_response(ValidationError.status_code, ValidationError.category, message)


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error", extra={"path": request.url.path})
    message = str(exc) if settings.DEBUG else ContentPlatformError.public_message
    return _error_response(500, ContentPlatformError.category, message)


# =============================================================================
# Upload
# =============================================================================


async def _stage_upload(upload: UploadFile, suffix: str) -> Path:
    """Copy an uploaded file into the staging directory, enforcing the size cap."""
    max_bytes = settings.MAX_UPLOAD_SIZE_MB * 1024 * 1024

    def _copy() -> Path:
        with tempfile.NamedTemporaryFile(
                dir=settings.UPLOAD_TMP_DIR, prefix="upload_", suffix=suffix, delete=False
        ) as tmp:
            shutil.copyfileobj(upload.file, tmp)
        return Path(tmp.name)

    staged = await asyncio.to_thread(_copy)
    if staged.stat().st_size > max_bytes:
        staged.unlink(missing_ok=True)
        raise ValidationError(f"File exceeds {settings.MAX_UPLOAD_SIZE_MB}MB")
    return staged


def _extension(filename: str | None) -> str:
    return Path(filename or "").suffix.lower().lstrip(".")


@app.post("/api/upload", response_model=UploadResponse)
async def upload_content(
        content_type: str | None = Form(None),
        title: str = Form("Untitled Content"),
        description: str = Form(""),
        company_id: str = Form("default"),
        html_content: str | None = Form(None),
        email_html: str | None = Form(None),
        email_subject: str = Form(""),
        email_from: str = Form(""),
        file: UploadFile | None = File(None),
        attachment: UploadFile | None = File(None),
        services: Services = Depends(get_services),
) -> UploadResponse:
    """
    Upload and process training content.

    - **content_type**: scorm, html, video, raw_html, landing or email
    - **file**: ZIP archive (scorm, html) or video file (video)
    - **html_content**: markup for raw_html and landing
    - **email_html**, **email_subject**, **email_from**, **attachment**: email parts
    """
    if not content_type:
        raise ValidationError("content_type is required")
    try:
        kind = ContentKind(content_type)
    except ValueError:
        raise ValidationError(f"Invalid content_type: {content_type}") from None

    fields = {
        "kind": kind.value,
        "title": title,
        "description": description,
        "company_id": company_id,
    }
    staged: Path | None = None

    try:
        if kind.is_archive:
            if file is None or not file.filename:
                raise ValidationError("File upload failed")
            if _extension(file.filename) != "zip":
                raise ValidationError(f"Only ZIP files are allowed for {kind.value}")
            staged = await _stage_upload(file, ".zip")
            fields["archive_path"] = staged

        elif kind is ContentKind.VIDEO:
            if file is None or not file.filename:
                raise ValidationError("File upload failed")
            staged = await _stage_upload(file, f".{_extension(file.filename)}")
            fields.update(source_path=staged, filename=file.filename)

        elif kind is ContentKind.EMAIL:
            if not email_html:
                raise ValidationError("email_html is required")
            fields.update(markup=email_html, subject=email_subject, sender=email_from)
            if attachment is not None and attachment.filename:
                fields.update(
                    attachment_name=attachment.filename,
                    attachment_content=await attachment.read(),
                )

        else:
            if not html_content:
                raise ValidationError("html_content is required")
            fields["markup"] = html_content

        try:
            upload = _upload_adapter.validate_python(fields)
        except SchemaError as e:
            raise ValidationError(f"Invalid upload: {e}") from e
        result = await services.pipeline.ingest(upload)
    finally:
        if staged is not None:
            staged.unlink(missing_ok=True)

    is_cue = result.label_type == "phishing-cue"
    return UploadResponse(
        content_id=result.content_id,
        content_type=result.kind,
        path=result.path,
        tags=[] if is_cue else result.labels,
        cues=result.labels if is_cue else [],
        difficulty=result.difficulty,
        preview_url=result.preview_url,
        steps_applied=result.steps_applied,
        attachment_filename=result.attachment_filename,
        attachment_size=result.attachment_size,
    )


# =============================================================================
# Launch and tracking
# =============================================================================


@app.post("/api/launch-link", response_model=LaunchLinkResponse)
async def create_launch_link(
        request: LaunchLinkRequest,
        services: Services = Depends(get_services),
) -> LaunchLinkResponse:
    """Issue a tracking link, creating the recipient on first use."""
    content = await services.pipeline.get_content(request.content_id)
    if content is None:
        raise NotFoundError(f"Content not found: {request.content_id}")

    await services.tracker.ensure_recipient(
        request.recipient_id,
        company_id=request.company_id,
        email=request.email,
        first_name=request.first_name,
        last_name=request.last_name,
    )
    link = await services.tracker.create_tracking_link(request.recipient_id, content.id)

    return LaunchLinkResponse(
        tracking_link_id=link.id,
        launch_url=services.tracker.absolute_launch_url(link),
        content={"id": content.id, "title": content.title, "type": content.content_type.value},
    )


@app.get("/launch")
async def launch(
        tid: str = Query(..., min_length=1),
        services: Services = Depends(get_services),
) -> RedirectResponse:
    """Resolve a tracking link and redirect to its rendered content."""
    content = await services.tracker.get_content_for_link(tid)
    if content is None:
        raise NotFoundError(f"Tracking link not found: {tid}")
    if not content.content_url or content.status != "succeeded":
        raise NotFoundError(f"Content not available: {content.id}")

    target = f"{settings.BASE_PATH}{settings.PUBLIC_CONTENT_PATH}/{content.content_url}?tid={tid}"
    return RedirectResponse(url=target, status_code=302)


@app.post("/api/track-view", response_model=TrackingResponse)
async def track_view(
        request: TrackViewRequest,
        services: Services = Depends(get_services),
) -> TrackingResponse:
    status = await services.tracker.record_view(request.tracking_link_id)
    return TrackingResponse(message=f"View tracked ({status.value})")


@app.post("/api/track-interaction", response_model=TrackingResponse)
async def track_interaction(
        request: TrackInteractionRequest,
        services: Services = Depends(get_services),
) -> TrackingResponse:
    await services.tracker.record_interaction(
        request.tracking_link_id,
        request.tag_name,
        request.interaction_type,
        request.interaction_value,
        request.success,
    )
    return TrackingResponse(message="Interaction tracked")


@app.post("/api/record-score", response_model=ScoreResponse)
async def record_score(
        request: RecordScoreRequest,
        services: Services = Depends(get_services),
) -> ScoreResponse:
    result = await services.tracker.record_score(
        request.tracking_link_id, request.score, request.interactions
    )
    return ScoreResponse(score=result.score, status=result.status.value, published=result.published)


# =============================================================================
# Read endpoints
# =============================================================================


@app.get("/api/content/{content_id}/tags", response_model=list[LabelResponse])
async def content_labels(
        content_id: str,
        services: Services = Depends(get_services),
) -> list[LabelResponse]:
    """Stored labels of a content item, in insertion order."""
    if await services.pipeline.get_content(content_id) is None:
        raise NotFoundError(f"Content not found: {content_id}")
    labels = await services.pipeline.get_content_labels(content_id)
    return [
        LabelResponse(
            tag_name=label.tag_name,
            tag_type=label.tag_type,
            confidence_score=label.confidence_score,
        )
        for label in labels
    ]


@app.get("/api/recipients/{recipient_id}/tag-scores", response_model=list[RecipientLabelScore])
async def recipient_label_scores(
        recipient_id: str,
        services: Services = Depends(get_services),
) -> list[RecipientLabelScore]:
    return await services.tracker.get_label_scores(recipient_id)


@app.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Service health endpoint."""
    services: Services | None = getattr(request.app.state, "services", None)
    return HealthResponse(
        status="healthy",
        version=__version__,
        database_ready=bool(services and services.db.is_initialized),
    )
