# -*- coding: utf-8 -*-
"""
Path validation for mirrored assets.

Asset references found in uploaded markup decide where downloaded files are
written, so every reference must be proven to stay inside the content's own
directory before anything touches the disk.
"""
import os
import re
from pathlib import Path

DEFAULT_PREFIX = "/system/"

# Alphanumerics, slash, underscore, dot and hyphen only
SAFE_PATH_PATTERN = re.compile(r"^[A-Za-z0-9/_.\-]+$")


def split_reference(reference: str) -> tuple[str, str]:
    """Split ``/a/b.png?v=1#x`` into ``("/a/b.png", "v=1")``. The fragment is dropped."""
    without_fragment = reference.split("#", 1)[0]
    path, _, query = without_fragment.partition("?")
    return path, query


def is_within(candidate: Path | str, root: Path | str) -> bool:
    """True if ``candidate`` resolves (symlinks followed) to ``root`` or below it."""
    resolved_root = Path(root).resolve()
    resolved = Path(candidate).resolve()
    return resolved == resolved_root or resolved_root in resolved.parents


def validate(path: str, content_root: Path | str, prefix: str = DEFAULT_PREFIX) -> bool:
    """
    Check that a referenced asset path cannot escape ``content_root``.

    Rules, all of which must hold:
    - the path (query removed) starts with ``prefix``
    - it has no ``..`` segment
    - it only uses characters from SAFE_PATH_PATTERN
    - the deepest part of ``content_root / path`` that already exists on
      disk resolves inside ``content_root``

    Pure predicate: never creates, modifies or deletes anything.
    """
    if not path:
        return False

    path, _ = split_reference(path)

    if not path.startswith(prefix) or path.endswith("/"):
        return False
    if not SAFE_PATH_PATTERN.match(path):
        return False
    if ".." in path.split("/"):
        return False

    root = Path(content_root).resolve()
    candidate = root / path.lstrip("/")

    # Walk up to the deepest existing (or dangling-symlink) component
    probe = candidate
    while probe != root and not os.path.lexists(probe):
        probe = probe.parent

    return is_within(probe, root)
