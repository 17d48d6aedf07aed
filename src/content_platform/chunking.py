# -*- coding: utf-8 -*-
"""
Boundary-aware splitting of large markup documents.

The annotation service has a practical input limit, so big documents are cut
into windows of at most ``max_bytes`` UTF-8 bytes. Each cut is placed right
after a closing tag when possible so the service sees well-formed fragments:

1. the last closing tag of a block-level container in the window
2. otherwise the last closing tag of any element in the window
3. otherwise the hard byte boundary (moved back to a character boundary)

Joining the chunks always gives back the original document.
"""
import logging
import re

logger = logging.getLogger(__name__)

SAFE_CLOSING_TAGS = [
    "div",
    "section",
    "article",
    "main",
    "header",
    "footer",
    "nav",
    "aside",
    "form",
    "fieldset",
    "table",
    "tbody",
    "thead",
    "tr",
    "ul",
    "ol",
    "li",
    "p",
    "blockquote",
    "figure",
    "h1",
    "h2",
    "h3",
    "h4",
    "h5",
    "h6",
]

_SAFE_CLOSE = re.compile(
    rb"</(?:" + b"|".join(tag.encode() for tag in SAFE_CLOSING_TAGS) + rb")\s*>",
    re.IGNORECASE,
)
_ANY_CLOSE = re.compile(rb"</[A-Za-z][A-Za-z0-9:_-]*\s*>")


def _last_match_end(pattern: re.Pattern, data: bytes, start: int, end: int) -> int | None:
    """End offset of the last match lying entirely inside data[start:end]."""
    last = None
    for match in pattern.finditer(data, start, end):
        last = match.end()
    return last


def _char_boundary(data: bytes, start: int, end: int) -> int:
    """Largest offset <= end that does not split a UTF-8 sequence."""
    cut = end
    while cut > start and (data[cut] & 0xC0) == 0x80:
        cut -= 1
    if cut == start:
        # Window smaller than a single character: move forward instead
        cut = end
        while cut < len(data) and (data[cut] & 0xC0) == 0x80:
            cut += 1
    return cut


def split(document: str, max_bytes: int) -> list[str]:
    """
    Split ``document`` into chunks of at most ``max_bytes`` bytes each.

    Deterministic: the same input always yields the same chunks.

    Raises:
        ValueError: if max_bytes is not positive
    """
    if max_bytes <= 0:
        raise ValueError("max_bytes must be greater than zero")

    data = document.encode("utf-8")
    total = len(data)
    if total <= max_bytes:
        return [document]

    chunks: list[str] = []
    hard_cuts = 0
    start = 0

    while start < total:
        end = start + max_bytes
        if end >= total:
            chunks.append(data[start:].decode("utf-8"))
            break

        cut = _last_match_end(_SAFE_CLOSE, data, start, end)
        if cut is None:
            cut = _last_match_end(_ANY_CLOSE, data, start, end)
        if cut is None:
            cut = _char_boundary(data, start, end)
            hard_cuts += 1

        chunks.append(data[start:cut].decode("utf-8"))
        start = cut

    if hard_cuts:
        logger.warning(
            "Document split without a tag boundary",
            extra={"hard_cuts": hard_cuts, "chunks": len(chunks)},
        )
    logger.debug(f"Split {total} bytes into {len(chunks)} chunks (max {max_bytes})")
    return chunks
