# -*- coding: utf-8 -*-
"""
Content Platform - training content ingestion, annotation and tracking service.
"""
__version__ = "1.0.0"

from .api import app  # noqa: E402
from .models import ContentUpload, UploadResponse  # noqa: E402

__all__ = ["app", "ContentUpload", "UploadResponse", "__version__"]
