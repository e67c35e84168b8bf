"""
Rewrite the `sources` of a source map so each entry is relative to the file
the map belongs to, whatever build directory or URL prefix produced it.
"""

import logging
import os
import posixpath
import re
from typing import List, Optional, Sequence

logger = logging.getLogger(f"mkdocs.plugins.{__name__}")

# A scheme of two or more characters (https:, webpack:, data:) or a protocol-relative
# prefix. Single-letter "schemes" are Windows drive letters.
URL_RE = re.compile(r"^(?:[a-zA-Z][a-zA-Z0-9+.\-]+:|//)")


def is_url(reference: str) -> bool:
    return bool(URL_RE.match(reference))


def _posix(path: str) -> str:
    return path.replace("\\", "/")


def ensure_relative(path: str) -> str:
    """Prefix `./` unless the path already starts with `./` or `../`."""
    if path.startswith("./") or path.startswith("../"):
        return path
    if path == "..":
        return "../"
    return "./" + path


def relative_reference(target_path: str, anchor_file_path: str) -> str:
    """Reference to `target_path` as seen from the directory holding `anchor_file_path`."""
    anchor_dir = posixpath.dirname(_posix(os.path.abspath(anchor_file_path)))
    target = _posix(os.path.abspath(target_path))
    return ensure_relative(posixpath.relpath(target, anchor_dir))


class PathNormalizer:
    """Makes source references relative to an anchor file.

    - URLs are returned untouched.
    - With both `build_root` and `base_url` set, references starting with
      `base_url` are mounted back inside `build_root` first.
    - Other paths are resolved against the anchor's directory (absolute paths
      stay absolute) and rewritten relative to it, always starting with `./`
      or `../`.
    """

    def __init__(self, build_root: Optional[str] = None, base_url: str = ""):
        self.build_root: Optional[str] = _posix(os.path.abspath(build_root)) if build_root else None
        self.base_url: str = base_url or ""

    def normalize(self, sources: Sequence[str], anchor_file_path: str) -> List[str]:
        anchor = _posix(os.path.abspath(anchor_file_path))
        fallback = ensure_relative(posixpath.basename(anchor))
        if not sources:
            logger.debug("[optimize] no sources for %s, using %s", anchor, fallback)
            return [fallback]

        anchor_dir = posixpath.dirname(anchor)
        return [self._normalize_one(source, anchor_dir) or fallback for source in sources]

    def _unmount(self, source: str) -> Optional[str]:
        if not self.build_root or not self.base_url or not source.startswith(self.base_url):
            return None
        remainder = source[len(self.base_url):].lstrip("/")
        return posixpath.join(self.build_root, remainder)

    def _normalize_one(self, source: str, anchor_dir: str) -> str:
        if not source:
            return ""

        path = self._unmount(source)
        if path is None:
            if is_url(source):
                return source
            path = _posix(source)

        if not (posixpath.isabs(path) or os.path.isabs(path)):
            path = posixpath.join(anchor_dir, path)
        return ensure_relative(posixpath.relpath(posixpath.normpath(path), anchor_dir))


def normalize(
    sources: Sequence[str],
    anchor_file_path: str,
    build_root: Optional[str] = None,
    base_url: str = "",
) -> List[str]:
    """Shortcut for `PathNormalizer(build_root, base_url).normalize(...)`."""
    return PathNormalizer(build_root, base_url).normalize(sources, anchor_file_path)
