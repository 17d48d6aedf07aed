# -*- coding: utf-8 -*-
"""
Content platform configuration using Pydantic BaseSettings.
"""
from pathlib import Path
from typing import List, Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Central service configuration loaded from environment variables.
    Pydantic's BaseSettings provides automatic validation, type casting,
    and reading from .env files.
    """

    # Server
    HOST: str = "0.0.0.0"
    PORT: int = 8001

    # Public URLs: BASE_URL is the absolute origin used for launch links,
    # BASE_PATH the prefix under which the service is mounted ("" for root)
    BASE_URL: str = "http://localhost:8001"
    BASE_PATH: str = ""
    # Reverse proxies trusted for X-Forwarded-* headers
    FORWARDED_ALLOW_IPS: str = "127.0.0.1"

    # Debug mode exposes raw error messages in API responses
    DEBUG: bool = False

    # Logging
    LOG_LEVEL: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    # "json" in production, "text" for local development
    LOG_FORMAT: Literal["json", "text"] = "json"

    # Database (SQLite)
    DATABASE_PATH: Path = Path("data/platform.db")

    # ==========================================================================
    # Content storage
    # ==========================================================================

    # Served layout: <CONTENT_DIR>/<content_id>/<ENTRY_DOCUMENT>
    CONTENT_DIR: Path = Path("data/content")
    ENTRY_DOCUMENT: str = "index.html"
    PUBLIC_CONTENT_PATH: str = "/content"
    # Staging area for multipart uploads, outside the served tree
    UPLOAD_TMP_DIR: Path = Path("data/uploads")

    MAX_UPLOAD_SIZE_MB: int = 100
    ALLOWED_VIDEO_EXTENSIONS: List[str] = ["mp4", "webm", "ogg"]

    # ==========================================================================
    # Annotation service (Anthropic Messages API)
    # ==========================================================================

    ANTHROPIC_API_KEY: str = ""
    ANTHROPIC_API_URL: str = "https://api.anthropic.com/v1/messages"
    ANTHROPIC_MODEL: str = "claude-3-5-sonnet-20241022"
    ANTHROPIC_MAX_TOKENS: int = 4096
    ANNOTATION_TIMEOUT: int = 120  # seconds

    # Master switch; when disabled every markup upload uses keyword labels
    ANNOTATION_ENABLED: bool = True

    # Documents above this size bypass the annotation service entirely
    ANNOTATION_MAX_BYTES: int = 1_000_000
    # Documents above this size are split and annotated chunk by chunk
    ANNOTATION_CHUNK_THRESHOLD_BYTES: int = 100_000
    ANNOTATION_CHUNK_SIZE_BYTES: int = 80_000

    # What to do when a single-pass annotation call fails:
    # "reject" aborts the upload, "fallback" keeps the unannotated document
    ANNOTATION_FAILURE_POLICY: Literal["reject", "fallback"] = "reject"

    # Vocabulary for keyword labelling when annotation is skipped
    KEYWORD_VOCABULARY: List[str] = [
        "phishing",
        "ransomware",
        "malware",
        "social-engineering",
        "password-security",
        "data-privacy",
        "email-security",
    ]

    # Retry (annotation service and asset downloads)
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_MIN_WAIT: int = 1
    RETRY_MAX_WAIT: int = 10

    # ==========================================================================
    # Asset mirroring
    # ==========================================================================

    SYSTEM_ASSET_PREFIX: str = "/system/"
    # Trusted origin serving /system/... assets
    SYSTEM_ASSET_ORIGIN: str = "https://assets.example.com"
    FETCH_TIMEOUT: int = 30  # seconds
    FETCH_MAX_ATTEMPTS: int = 3
    MAX_ASSET_SIZE_MB: int = 25
    MAX_CONCURRENT_DOWNLOADS: int = 4

    # ==========================================================================
    # Tracking and notifications
    # ==========================================================================

    PASSING_SCORE: int = 80
    PREVIEW_RECIPIENT_ID: str = "preview"

    # AWS SNS topic receiving interaction events
    SNS_TOPIC_ARN: str = ""
    AWS_REGION: str = "us-east-1"

    # CORS
    CORS_ORIGINS: List[str] = ["*"]
    CORS_ALLOW_CREDENTIALS: bool = False

    # Request tracking
    REQUEST_ID_HEADER: str = "X-Request-ID"

    # Compression
    GZIP_MIN_SIZE: int = 1000

    # ==========================================================================
    # Paths (computed, not from env vars)
    # ==========================================================================
    BASE_DIR: Path = Path(__file__).resolve().parent
    TEMPLATES_DIR: Path = BASE_DIR / "templates"
    PROMPTS_DIR: Path = TEMPLATES_DIR / "prompts"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @property
    def api_base(self) -> str:
        """Path prefix of the JSON API as seen by browsers."""
        return f"{self.BASE_PATH}/api"


# Global configuration instance
settings = Settings()

# Ensure the storage directories exist as a side-effect
settings.DATABASE_PATH.parent.mkdir(parents=True, exist_ok=True)
settings.CONTENT_DIR.mkdir(parents=True, exist_ok=True)
settings.UPLOAD_TMP_DIR.mkdir(parents=True, exist_ok=True)
