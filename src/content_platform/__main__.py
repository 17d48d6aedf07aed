# -*- coding: utf-8 -*-
"""
Entry point: ``python -m content_platform`` or the ``content-platform`` script.
"""
import uvicorn

from content_platform.config import settings


def main():
    """Start Uvicorn behind the reverse proxy that serves BASE_PATH."""
    uvicorn.run(
        "content_platform.api:app",
        host=settings.HOST,
        port=settings.PORT,
        root_path=settings.BASE_PATH,
        proxy_headers=True,
        forwarded_allow_ips=settings.FORWARDED_ALLOW_IPS,
        # Keep the handlers installed by setup_logging
        log_config=None,
        log_level=settings.LOG_LEVEL.lower(),
    )


if __name__ == "__main__":
    main()
