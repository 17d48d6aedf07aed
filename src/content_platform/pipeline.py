# -*- coding: utf-8 -*-
"""
Content ingestion pipeline.

Each upload runs through a fixed chain of steps, recorded in
``PipelineResult.steps_applied``:

1. Intake - validate the upload variant and create the Content record
2. Extraction - unpack archives and locate the entry document
3. Annotation - policy decided by ``decide_annotation`` (kind and size)
4. Asset mirroring - download system and CDN assets, rewrite references
5. Tracking injection - base tag first in <head>, script before </body>
6. Persistence - atomic document write, idempotent labels, rendered path
7. Preview issuance - tracking link for the reserved preview recipient

Any fatal error marks the record ``failed``, removes the content directory
and propagates. Chunk and asset failures only degrade the result.
"""
import asyncio
import logging
import os
import re
import secrets
import shutil
import zipfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from . import chunking, path_guard
from .annotation import AnnotationClient
from .assets import AssetMirror
from .config import settings
from .database import Database
from .db_models import Content, ContentKind, Label, LabelType
from .errors import (
    DuplicateKeyError,
    ExternalServiceError,
    PersistenceError,
    StructuralError,
    ValidationError,
)
from .jinja_env import render_tracking_script
from .models import ContentUpload, EmailUpload, VideoUpload
from .tracking import InteractionTracker

logger = logging.getLogger(__name__)

ANNOTATED_CONFIDENCE = 1.0
TOPIC_CONFIDENCE = 0.8
KEYWORD_CONFIDENCE = 0.5

_HEAD_OPEN = re.compile(r"<head(?:\s[^>]*)?>", re.IGNORECASE)
_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class AnnotationMode(str, Enum):
    """How a document is labelled."""

    NONE = "none"
    SINGLE = "single"
    CHUNKED = "chunked"
    KEYWORD_FALLBACK = "keyword_fallback"
    PHISHING = "phishing"


@dataclass
class PipelineResult:
    """Result of ingesting one upload."""

    content_id: str
    kind: ContentKind
    path: str = ""
    labels: list[str] = field(default_factory=list)
    label_type: LabelType = "interaction-tag"
    difficulty: int | None = None
    preview_url: str = ""
    attachment_filename: str | None = None
    attachment_size: int | None = None
    steps_applied: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


# =============================================================================
# Pure helpers
# =============================================================================


def decide_annotation(
        kind: ContentKind,
        size: int,
        enabled: bool = True,
        max_bytes: int | None = None,
        chunk_threshold: int | None = None,
) -> AnnotationMode:
    """
    Pick the annotation mode for a document of ``size`` UTF-8 bytes.

    SCORM and video are never annotated. Email always takes the phishing-cue
    profile whatever its size. Markup above ``max_bytes`` (or with the
    service disabled) gets keyword labels only; above ``chunk_threshold`` it
    is annotated chunk by chunk.
    """
    max_bytes = settings.ANNOTATION_MAX_BYTES if max_bytes is None else max_bytes
    if chunk_threshold is None:
        chunk_threshold = settings.ANNOTATION_CHUNK_THRESHOLD_BYTES

    if kind in (ContentKind.SCORM, ContentKind.VIDEO):
        return AnnotationMode.NONE
    if kind is ContentKind.EMAIL:
        return AnnotationMode.PHISHING if enabled else AnnotationMode.KEYWORD_FALLBACK
    if not enabled or size > max_bytes:
        return AnnotationMode.KEYWORD_FALLBACK
    if size > chunk_threshold:
        return AnnotationMode.CHUNKED
    return AnnotationMode.SINGLE


def keyword_labels(title: str, vocabulary: list[str] | None = None) -> list[str]:
    """Vocabulary terms found in ``title``; hyphens, underscores and spaces are equivalent."""
    if vocabulary is None:
        vocabulary = settings.KEYWORD_VOCABULARY

    normalized = re.sub(r"[\s_-]+", " ", title.lower())
    labels = []
    for term in vocabulary:
        spaced = re.sub(r"[\s_-]+", " ", term.lower())
        if re.search(rf"\b{re.escape(spaced)}\b", normalized) and term not in labels:
            labels.append(term)
    return labels


def inject_base_tag(document: str, href: str) -> str:
    """Insert ``<base href>`` as the first child of <head>, else append it."""
    tag = f'<base href="{href}">'
    match = _HEAD_OPEN.search(document)
    if match is None:
        return f"{document}\n{tag}"
    return f"{document[:match.end()]}\n{tag}{document[match.end():]}"


def inject_tracking_script(document: str, script: str) -> str:
    """Insert ``script`` right before the last </body>, else append it."""
    index = document.lower().rfind("</body>")
    if index < 0:
        return f"{document}\n{script}"
    return f"{document[:index]}{script}\n{document[index:]}"


def find_entry_document(root: Path, name: str) -> Path | None:
    """``root/name`` if present, else the first match in a sorted recursive walk."""
    direct = root / name
    if direct.is_file():
        return direct
    for candidate in sorted(root.rglob("*")):
        if candidate.is_file() and candidate.name.lower() == name.lower():
            return candidate
    return None


def safe_filename(name: str, fallback: str = "attachment") -> str:
    """Basename with anything outside ``[A-Za-z0-9._-]`` replaced."""
    base = Path(name.replace("\\", "/")).name
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", base).lstrip(".")
    return cleaned or fallback


def write_document(path: Path, document: str) -> None:
    """Write through a temporary sibling so readers never see a partial file."""
    partial = path.with_name(path.name + ".tmp")
    try:
        partial.write_text(document, encoding="utf-8")
        os.replace(partial, path)
    except OSError as e:
        partial.unlink(missing_ok=True)
        raise PersistenceError(f"Could not write {path}: {e}") from e


def _unpack_archive(archive_path: Path, destination: Path) -> None:
    try:
        with zipfile.ZipFile(archive_path) as archive:
            for member in archive.infolist():
                if not path_guard.is_within(destination / member.filename, destination):
                    raise StructuralError(
                        f"Archive member escapes content directory: {member.filename}"
                    )
            archive.extractall(destination)
    except zipfile.BadZipFile as e:
        raise StructuralError(f"Not a valid ZIP archive: {archive_path.name}") from e
    except OSError as e:
        raise StructuralError(f"Could not extract {archive_path.name}: {e}") from e


# =============================================================================
# Pipeline
# =============================================================================


class ContentPipeline:
    """Turns an upload into served, labelled and tracked content."""

    def __init__(
            self,
            db: Database,
            annotator: AnnotationClient,
            mirror: AssetMirror,
            tracker: InteractionTracker,
            content_dir: Path | str | None = None,
            entry_document: str | None = None,
    ):
        self.db = db
        self.annotator = annotator
        self.mirror = mirror
        self.tracker = tracker
        self.content_dir = Path(content_dir or settings.CONTENT_DIR)
        self.entry_document = entry_document or settings.ENTRY_DOCUMENT

    @property
    def annotation_enabled(self) -> bool:
        return settings.ANNOTATION_ENABLED and self.annotator.is_configured

    async def ingest(self, upload: ContentUpload) -> PipelineResult:
        """
        Run the whole pipeline for one upload.

        Raises:
            ValidationError: invalid upload fields
            StructuralError: unreadable archive or missing entry document
            ExternalServiceError: single-pass annotation failed under the
                ``reject`` policy
            PersistenceError: database or file-system write failure
        """
        self._validate(upload)

        kind = ContentKind(upload.kind)
        content_id = secrets.token_hex(16)
        root = self.content_dir / content_id
        result = PipelineResult(content_id=content_id, kind=kind)

        await self._create_record(content_id, upload)
        logger.info(
            "Ingesting content",
            extra={"content_id": content_id, "content_type": kind.value},
        )

        try:
            if isinstance(upload, VideoUpload):
                await self._store_video(upload, root, result)
            else:
                await self._process_document(upload, root, result)

            result.preview_url = await self.tracker.issue_preview_link(content_id)
            result.steps_applied.append("preview")

            # The rendered path is written last: it marks the content as servable
            await self.db.update(
                "content",
                {"status": "succeeded", "content_url": result.path},
                "id = ?",
                (content_id,),
            )
        except Exception as e:
            logger.error(
                f"Ingestion failed: {e}",
                extra={"content_id": content_id, "error_type": type(e).__name__},
            )
            await self._discard(content_id, root)
            raise

        logger.info(
            "Content ingested",
            extra={
                "content_id": content_id,
                "labels": len(result.labels),
                "steps": result.steps_applied,
            },
        )
        return result

    def _validate(self, upload: ContentUpload) -> None:
        if isinstance(upload, VideoUpload):
            extension = Path(upload.filename).suffix.lower().lstrip(".")
            if extension not in settings.ALLOWED_VIDEO_EXTENSIONS:
                allowed = ", ".join(settings.ALLOWED_VIDEO_EXTENSIONS)
                raise ValidationError(f"Invalid video format. Allowed: {allowed}")
            if not upload.source_path.is_file():
                raise ValidationError("Uploaded video file is missing")
        elif ContentKind(upload.kind).is_archive:
            if not upload.archive_path.is_file():
                raise ValidationError("Uploaded archive is missing")
        elif not upload.markup.strip():
            raise ValidationError("Markup is required")

    async def _create_record(self, content_id: str, upload: ContentUpload) -> None:
        record = {
            "id": content_id,
            "company_id": upload.company_id,
            "title": upload.title,
            "description": upload.description,
            "content_type": upload.kind,
            "status": "processing",
        }
        if isinstance(upload, EmailUpload):
            record.update(
                email_subject=upload.subject,
                email_from_address=upload.sender,
                email_body_html=upload.markup,
            )
            if upload.attachment_content is not None:
                record.update(
                    email_attachment_filename=safe_filename(upload.attachment_name or ""),
                    email_attachment_content=upload.attachment_content,
                )
        await self.db.insert("content", record)

    async def _discard(self, content_id: str, root: Path) -> None:
        shutil.rmtree(root, ignore_errors=True)
        try:
            await self.db.update("content", {"status": "failed"}, "id = ?", (content_id,))
        except PersistenceError as e:
            logger.error(f"Could not mark content {content_id} as failed: {e}")

    # =========================================================================
    # Steps
    # =========================================================================

    async def _store_video(self, upload: VideoUpload, root: Path, result: PipelineResult) -> None:
        extension = Path(upload.filename).suffix.lower().lstrip(".")
        filename = f"video.{extension}"
        try:
            root.mkdir(parents=True, exist_ok=True)
            await asyncio.to_thread(shutil.move, str(upload.source_path), str(root / filename))
        except OSError as e:
            raise PersistenceError(f"Could not store video: {e}") from e

        result.path = f"{result.content_id}/{filename}"
        result.steps_applied.append("store_video")

    async def _process_document(self, upload: ContentUpload, root: Path, result: PipelineResult) -> None:
        content_id = result.content_id

        # Intake / extraction
        if result.kind.is_archive:
            await asyncio.to_thread(_unpack_archive, upload.archive_path, root)
            upload.archive_path.unlink(missing_ok=True)
            entry = find_entry_document(root, self.entry_document)
            if entry is None:
                raise StructuralError(f"{self.entry_document} not found in archive")
            document = entry.read_text(encoding="utf-8", errors="replace")
            result.steps_applied.append("extract")
        else:
            try:
                root.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise PersistenceError(f"Could not create content directory: {e}") from e
            entry = root / self.entry_document
            document = upload.markup
            if isinstance(upload, EmailUpload) and upload.attachment_content is not None:
                self._save_attachment(upload, root, result)

        # Annotation
        document, confidence = await self._annotate(document, upload.title, result)

        # Asset mirroring
        document = await self.mirror.mirror(document, content_id)
        result.steps_applied.append("mirror_assets")

        # Tracking injection
        relative_dir = entry.parent.relative_to(root).as_posix()
        base_href = f"{AssetMirror.public_base(content_id)}/"
        if relative_dir != ".":
            base_href = f"{base_href}{relative_dir}/"
        document = inject_base_tag(document, base_href)
        document = inject_tracking_script(document, render_tracking_script())
        result.steps_applied.append("inject_tracking")

        # Persistence
        write_document(entry, document)
        await self.store_labels(content_id, result.labels, result.label_type, confidence)

        result.path = f"{content_id}/{entry.relative_to(root).as_posix()}"
        if result.difficulty is not None:
            await self.db.update(
                "content", {"difficulty": result.difficulty}, "id = ?", (content_id,)
            )
        result.steps_applied.append("persist")

    def _save_attachment(self, upload: EmailUpload, root: Path, result: PipelineResult) -> None:
        filename = safe_filename(upload.attachment_name or "")
        if filename.lower() == self.entry_document.lower():
            filename = f"attachment_{filename}"
        try:
            (root / filename).write_bytes(upload.attachment_content)
        except OSError as e:
            raise PersistenceError(f"Could not save attachment: {e}") from e

        result.attachment_filename = filename
        result.attachment_size = len(upload.attachment_content)
        result.steps_applied.append("save_attachment")

    async def _annotate(self, document: str, title: str, result: PipelineResult) -> tuple[str, float]:
        """Apply the annotation policy. Returns the document and the label confidence."""
        size = len(document.encode("utf-8"))
        mode = decide_annotation(result.kind, size, enabled=self.annotation_enabled)
        result.metadata["annotation_mode"] = mode.value
        result.metadata["document_bytes"] = size

        if mode is AnnotationMode.SINGLE:
            try:
                annotation = await self.annotator.tag_interactive(document)
            except ExternalServiceError as e:
                return self._annotation_failed(document, title, result, e)
            result.labels = annotation.labels
            result.steps_applied.append("annotate")
            return annotation.document, ANNOTATED_CONFIDENCE

        if mode is AnnotationMode.CHUNKED:
            document, result.labels = await self._annotate_chunks(document, result)
            result.steps_applied.append("annotate_chunked")
            return document, ANNOTATED_CONFIDENCE

        if mode is AnnotationMode.PHISHING:
            try:
                annotation = await self.annotator.tag_phishing_cues(document)
            except ExternalServiceError as e:
                return self._annotation_failed(document, title, result, e)
            result.labels = annotation.cues
            result.label_type = "phishing-cue"
            result.difficulty = annotation.difficulty
            result.steps_applied.append("phishing_cues")
            return annotation.document, ANNOTATED_CONFIDENCE

        if mode is AnnotationMode.KEYWORD_FALLBACK:
            result.labels = keyword_labels(title)
            result.steps_applied.append("keyword_labels")
            return document, KEYWORD_CONFIDENCE

        if result.kind is ContentKind.SCORM and self.annotation_enabled:
            # Package is left untouched; only its topics are labelled
            try:
                result.labels = await self.annotator.suggest_topics(document)
                result.steps_applied.append("topic_labels")
                return document, TOPIC_CONFIDENCE
            except ExternalServiceError as e:
                logger.warning(f"Topic suggestion failed, using keyword labels: {e}")

        result.labels = keyword_labels(title)
        result.steps_applied.append("keyword_labels")
        return document, KEYWORD_CONFIDENCE

    def _annotation_failed(
            self, document: str, title: str, result: PipelineResult, error: ExternalServiceError
    ) -> tuple[str, float]:
        if settings.ANNOTATION_FAILURE_POLICY != "fallback":
            raise error
        logger.warning(
            f"Annotation failed, keeping unannotated document: {error}",
            extra={"content_id": result.content_id},
        )
        result.labels = keyword_labels(title)
        result.metadata["annotation_failed"] = True
        result.steps_applied.append("keyword_labels")
        return document, KEYWORD_CONFIDENCE

    async def _annotate_chunks(self, document: str, result: PipelineResult) -> tuple[str, list[str]]:
        """
        Annotate chunk by chunk.

        A failing chunk keeps its original text. Whitespace around each chunk
        is kept as-is since responses come back trimmed.
        """
        chunks = chunking.split(document, settings.ANNOTATION_CHUNK_SIZE_BYTES)
        parts: list[str] = []
        labels: list[str] = []
        failed = 0

        for index, chunk in enumerate(chunks):
            body = chunk.strip()
            if not body:
                parts.append(chunk)
                continue

            leading = chunk[:len(chunk) - len(chunk.lstrip())]
            trailing = chunk[len(chunk.rstrip()):]
            try:
                annotation = await self.annotator.tag_interactive(body, fragment=True)
            except ExternalServiceError as e:
                failed += 1
                logger.warning(
                    f"Chunk {index + 1}/{len(chunks)} annotation failed, keeping original: {e}",
                    extra={"content_id": result.content_id},
                )
                parts.append(chunk)
                continue

            parts.append(f"{leading}{annotation.document}{trailing}")
            for label in annotation.labels:
                if label not in labels:
                    labels.append(label)

        result.metadata["chunks"] = len(chunks)
        result.metadata["failed_chunks"] = failed
        return "".join(parts), labels

    # =========================================================================
    # Labels
    # =========================================================================

    async def store_labels(
            self,
            content_id: str,
            labels: list[str],
            label_type: LabelType = "interaction-tag",
            confidence: float = ANNOTATED_CONFIDENCE,
    ) -> None:
        """Insert labels (duplicates are ignored) and refresh the summary column."""
        for name in labels:
            label = Label(
                content_id=content_id,
                tag_name=name,
                tag_type=label_type,
                confidence_score=confidence,
            )
            try:
                await self.db.insert("content_tags", label.model_dump())
            except DuplicateKeyError:
                logger.debug(f"Label already stored: {name}")

        await self._refresh_label_summary(content_id)

    async def _refresh_label_summary(self, content_id: str) -> None:
        """Rebuild ``content.tags`` from the stored labels. Failure is only a warning."""
        try:
            rows = await self.db.fetch_all(
                """
                SELECT tag_name, MIN(id) AS first_id FROM content_tags
                WHERE content_id = ?
                GROUP BY tag_name
                ORDER BY first_id
                """,
                (content_id,),
            )
            summary = ", ".join(row["tag_name"] for row in rows) or None
            await self.db.update("content", {"tags": summary}, "id = ?", (content_id,))
        except PersistenceError as e:
            logger.warning(
                f"Could not update label summary: {e}",
                extra={"content_id": content_id},
            )

    async def get_content(self, content_id: str) -> Content | None:
        row = await self.db.fetch_one("SELECT * FROM content WHERE id = ?", (content_id,))
        return Content.model_validate(row) if row else None

    async def get_content_labels(self, content_id: str) -> list[Label]:
        rows = await self.db.fetch_all(
            "SELECT content_id, tag_name, tag_type, confidence_score "
            "FROM content_tags WHERE content_id = ? ORDER BY id",
            (content_id,),
        )
        return [Label.model_validate(row) for row in rows]
