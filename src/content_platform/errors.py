# -*- coding: utf-8 -*-
"""
Error taxonomy shared by the pipeline, the tracker and the API layer.

Each error carries a stable ``category`` (exposed to API clients) and the
HTTP status it maps to. ``public_message`` is what callers see when the
service is not running in debug mode.
"""


class ContentPlatformError(Exception):
    """Base class for all expected service failures."""

    category = "internal_error"
    status_code = 500
    public_message = "Internal server error"


class ValidationError(ContentPlatformError):
    """Missing or invalid upload/request fields. Not retryable."""

    category = "validation_error"
    status_code = 400
    public_message = "Invalid request"


class NotFoundError(ContentPlatformError):
    """Unknown tracking link, content item or recipient."""

    category = "not_found"
    status_code = 404
    public_message = "Resource not found"


class ExternalServiceError(ContentPlatformError):
    """The annotation service or the publish target failed."""

    category = "external_service_error"
    status_code = 502
    public_message = "Upstream service unavailable"


class FetchError(ContentPlatformError):
    """An asset download failed."""

    category = "fetch_error"
    status_code = 502
    public_message = "Asset download failed"


class PersistenceError(ContentPlatformError):
    """Database or content-store write failure."""

    category = "persistence_error"
    status_code = 500
    public_message = "Storage failure"


class DuplicateKeyError(PersistenceError):
    """Insert violated a unique constraint. Callers may treat it as benign."""

    category = "duplicate_key"
    status_code = 409
    public_message = "Resource already exists"


class StructuralError(ContentPlatformError):
    """Uploaded archive is unreadable or has no entry document."""

    category = "structural_error"
    status_code = 422
    public_message = "Uploaded content could not be processed"
