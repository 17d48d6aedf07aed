# -*- coding: utf-8 -*-
"""
Asset mirroring: download referenced resources into content-scoped storage.

Two reference classes are recognised in ``src=``, ``href=`` and CSS
``url()`` contexts:

- system paths carrying the configured prefix (``/system/img/logo.png``),
  fetched from the trusted asset origin and stored under
  ``<content>/system/...``
- protocol-relative CDN references (``//cdn.example.com/lib.js``), fetched
  over https and stored under ``<content>/cdn/<host>/...``

A reference is rewritten to its local public URL only after its download
succeeded.
"""
import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path

from . import path_guard
from .config import settings
from .fetcher import AssetFetcher

logger = logging.getLogger(__name__)

_ATTRIBUTE_REF = re.compile(
    r"(?P<lead>\b(?:src|href)\s*=\s*)(?P<quote>[\"'])(?P<ref>[^\"'<>]+)(?P=quote)",
    re.IGNORECASE,
)
_CSS_URL_REF = re.compile(
    r"(?P<lead>\burl\(\s*)(?P<quote>[\"']?)(?P<ref>[^\"'()\s]+)(?P=quote)(?P<tail>\s*\))",
    re.IGNORECASE,
)
_HOST_PATTERN = re.compile(r"^[A-Za-z0-9](?:[A-Za-z0-9.-]*[A-Za-z0-9])?$")


@dataclass(frozen=True)
class AssetPlan:
    """Where one reference is fetched from, stored and served."""

    url: str
    destination: Path
    public_url: str


class AssetMirror:
    """Mirrors system and CDN assets of a document into its content directory."""

    def __init__(
            self,
            fetcher: AssetFetcher,
            content_dir: Path | str | None = None,
            origin: str | None = None,
            prefix: str | None = None,
            max_concurrency: int | None = None,
    ):
        self.fetcher = fetcher
        self.content_dir = Path(content_dir or settings.CONTENT_DIR)
        self.origin = (origin or settings.SYSTEM_ASSET_ORIGIN).rstrip("/")
        self.prefix = prefix or settings.SYSTEM_ASSET_PREFIX
        self.max_concurrency = max_concurrency or settings.MAX_CONCURRENT_DOWNLOADS

    def content_root(self, content_id: str) -> Path:
        return self.content_dir / content_id

    @staticmethod
    def public_base(content_id: str) -> str:
        """Public URL of a content directory, without trailing slash."""
        return f"{settings.BASE_PATH}{settings.PUBLIC_CONTENT_PATH}/{content_id}"

    @staticmethod
    def find_references(document: str) -> list[str]:
        """All ``src``/``href``/``url()`` values, de-duplicated in document order."""
        refs: list[str] = []
        for pattern in (_ATTRIBUTE_REF, _CSS_URL_REF):
            for match in pattern.finditer(document):
                ref = match.group("ref").strip()
                if ref and ref not in refs:
                    refs.append(ref)
        return refs

    def plan(self, reference: str, content_id: str) -> AssetPlan | None:
        """
        Map one reference to its download plan.

        Returns None for references that are not mirrored or are rejected.
        """
        if reference.startswith("//"):
            return self._plan_cdn(reference, content_id)
        if reference.startswith(self.prefix):
            return self._plan_system(reference, content_id)
        return None

    def _plan_system(self, reference: str, content_id: str) -> AssetPlan | None:
        root = self.content_root(content_id)
        path, query = path_guard.split_reference(reference)

        if not path_guard.validate(path, root, self.prefix):
            logger.warning(
                "Rejected system asset path",
                extra={"content_id": content_id, "reference": reference[:200]},
            )
            return None

        url = f"{self.origin}{path}"
        if query:
            url = f"{url}?{query}"
        return AssetPlan(
            url=url,
            destination=root / path.lstrip("/"),
            public_url=f"{self.public_base(content_id)}{path}",
        )

    def _plan_cdn(self, reference: str, content_id: str) -> AssetPlan | None:
        root = self.content_root(content_id)
        target, query = path_guard.split_reference(reference[2:])
        host, slash, path = target.partition("/")
        path = slash + path

        if (
                not _HOST_PATTERN.match(host)
                or path in ("", "/")
                or path.endswith("/")
                or ".." in path.split("/")
                or not path_guard.SAFE_PATH_PATTERN.match(path)
        ):
            logger.warning(
                "Rejected CDN asset reference",
                extra={"content_id": content_id, "reference": reference[:200]},
            )
            return None

        destination = root / "cdn" / host / path.lstrip("/")
        if not path_guard.is_within(destination, root):
            logger.warning(
                "Rejected CDN asset path outside content directory",
                extra={"content_id": content_id, "reference": reference[:200]},
            )
            return None

        url = f"https://{host}{path}"
        if query:
            url = f"{url}?{query}"
        return AssetPlan(
            url=url,
            destination=destination,
            public_url=f"{self.public_base(content_id)}/cdn/{host}{path}",
        )

    async def mirror(self, document: str, content_id: str) -> str:
        """
        Download every mirrored asset of ``document`` and rewrite its references.

        Per-asset failures are logged and leave that reference untouched.

        Returns:
            The document with successfully mirrored references rewritten
        """
        plans: dict[str, AssetPlan] = {}
        for reference in self.find_references(document):
            asset = self.plan(reference, content_id)
            if asset is not None:
                plans[reference] = asset

        if not plans:
            return document

        # One download per destination, whatever the number of references
        downloads: dict[Path, str] = {}
        for asset in plans.values():
            downloads.setdefault(asset.destination, asset.url)

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def _download(destination: Path, url: str) -> tuple[Path, bool]:
            async with semaphore:
                return destination, await self.fetcher.download(url, destination)

        results = await asyncio.gather(
            *(_download(destination, url) for destination, url in downloads.items())
        )
        fetched = {destination for destination, ok in results if ok}

        rewrites = {
            reference: asset.public_url
            for reference, asset in plans.items()
            if asset.destination in fetched
        }

        logger.info(
            f"Mirrored {len(fetched)}/{len(downloads)} assets",
            extra={"content_id": content_id, "references": len(plans)},
        )
        return self.rewrite(document, rewrites)

    @staticmethod
    def rewrite(document: str, rewrites: dict[str, str]) -> str:
        """Replace references found in ``rewrites``; everything else is kept verbatim."""
        if not rewrites:
            return document

        def _replace(match: re.Match) -> str:
            ref = match.group("ref")
            new_ref = rewrites.get(ref.strip())
            if new_ref is None:
                return match.group(0)
            start, end = match.span("ref")
            offset = match.start()
            whole = match.group(0)
            return whole[:start - offset] + new_ref + whole[end - offset:]

        document = _ATTRIBUTE_REF.sub(_replace, document)
        return _CSS_URL_REF.sub(_replace, document)
