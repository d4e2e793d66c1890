"""Utility functions for Atoll.

String, URL and filesystem helpers shared by the build and dev pipelines.

Key functions:
    prefix_url: Prefix a site path with the configured base path.
    join_root_url: Join an absolute site URL with a path.
    escape_html: Escape text for inclusion in markup.
    inject_before: Insert markup before a closing tag.
    ensure_clean_dir: Ensure a directory exists and is empty.
    format_rfc2822: Format a datetime for feeds.
"""

from __future__ import annotations

import shutil
from datetime import datetime, timezone
from email.utils import format_datetime
from pathlib import Path

# URL prefixes that are never rewritten with the base path
_URL_SKIP_PREFIXES = (
    "http://",
    "https://",
    "//",
    "#",
)


def prefix_url(path: str, base_path: str = "") -> str:
    """Prefix a root-relative path with the site base path.

    External URLs, protocol handlers (``mailto:``, ``tel:``...) and anchors
    are returned unchanged.

    Args:
        path: Path with or without a leading slash.
        base_path: Normalized base path such as ``/blog`` or ``""``.

    Returns:
        The prefixed path.

    Examples:
        >>> prefix_url("/about", "/blog")
        '/blog/about'

        >>> prefix_url("rss.xml", "")
        '/rss.xml'

        >>> prefix_url("https://example.com/a", "/blog")
        'https://example.com/a'
    """
    if path.startswith(_URL_SKIP_PREFIXES) or ":" in path:
        return path
    normalized = path if path.startswith("/") else f"/{path}"
    if not base_path:
        return normalized
    return f"{base_path}{normalized}"


def strip_base_path(path: str, base_path: str) -> str | None:
    """Remove the base path from an incoming request path.

    Returns:
        The site-relative path, or None when the path lies outside the
        base path.
    """
    if not base_path:
        return path
    if path == base_path:
        return "/"
    if path.startswith(base_path + "/"):
        return path[len(base_path) :]
    return None


def join_root_url(root_url: str, path: str) -> str:
    """Safely join a root URL and a path, avoiding double slashes.

    Examples:
        >>> join_root_url('https://example.com', '/about')
        'https://example.com/about'

        >>> join_root_url('https://example.com/', 'about')
        'https://example.com/about'
    """
    if not root_url:
        return path
    base = root_url.rstrip("/")
    suffix = path if path.startswith("/") else f"/{path}"
    return f"{base}{suffix}"


def escape_html(text: str) -> str:
    """Escape special HTML characters in a string.

    Examples:
        >>> escape_html('Tom & Jerry')
        'Tom &amp; Jerry'
    """
    return (
        text.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def inject_before(html: str, closing_tag: str, snippet: str) -> str:
    """Insert ``snippet`` before the first ``closing_tag``, or append it."""
    if not snippet:
        return html
    if closing_tag in html:
        return html.replace(closing_tag, f"{snippet}{closing_tag}", 1)
    return html + snippet


def ensure_clean_dir(path: Path) -> None:
    """Ensure a directory exists and is empty.

    Args:
        path: Directory path to clean or create.
    """
    if path.exists():
        shutil.rmtree(str(path), ignore_errors=True)
    path.mkdir(parents=True, exist_ok=True)


def copy_tree(source: Path, dest: Path) -> int:
    """Copy every file under ``source`` into ``dest`` verbatim.

    Returns:
        Number of files copied.
    """
    if not source.is_dir():
        return 0
    count = 0
    for item in sorted(source.rglob("*")):
        if item.is_dir():
            continue
        target = dest / item.relative_to(source)
        target.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(item, target)
        count += 1
    return count


def format_rfc2822(value: datetime) -> str:
    """Format a datetime as an RFC 2822 date in GMT.

    Examples:
        >>> format_rfc2822(datetime(2024, 6, 1, tzinfo=timezone.utc))
        'Sat, 01 Jun 2024 00:00:00 GMT'
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return format_datetime(value.astimezone(timezone.utc), usegmt=True)
