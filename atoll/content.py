"""Content document discovery for Atoll.

Content documents live under ``src/posts`` in one of two forms:

- Single file: ``posts/<slug>.md``
- Folder: ``posts/<slug>/index.md``, with co-located assets (images, cover
  art) beside it that are copied next to the rendered page.

Each document starts with YAML front-matter. ``title`` and ``publishedAt``
are required; ``slug`` overrides the name derived from the file or folder.
The collection is sorted by ``publishedAt``, newest first, on every load.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

import yaml

from .errors import ContentError

CONTENT_SUFFIX = ".md"
INDEX_FILENAME = f"index{CONTENT_SUFFIX}"

FRONTMATTER_RE = re.compile(r"^---\s*\n(.*?)\n---\s*(?:\n|$)", re.DOTALL)


def extract_frontmatter(text: str) -> tuple[dict[str, Any], str]:
    """Extract YAML frontmatter from content.

    Args:
        text: Raw file content.

    Returns:
        Tuple of (frontmatter dict, remaining content).
    """
    match = FRONTMATTER_RE.match(text)
    if not match:
        return {}, text
    try:
        data = yaml.safe_load(match.group(1)) or {}
    except yaml.YAMLError:
        return {}, text
    if not isinstance(data, dict):
        return {}, text
    return data, text[match.end() :]


def parse_date(value: Any) -> datetime | None:
    """Normalize a front-matter date to a UTC-aware datetime.

    Accepts YAML dates and datetimes as well as ISO 8601 strings.

    Examples:
        >>> parse_date("2024-06-01")
        datetime.datetime(2024, 6, 1, 0, 0, tzinfo=datetime.timezone.utc)
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass
class PostDocument:
    """A content document.

    Attributes:
        slug: URL segment; derived from the file or folder unless overridden.
        title: Document title.
        published_at: Publication date (UTC).
        source_path: Markdown file the document was read from.
        subtitle: Optional subtitle.
        description: Optional summary.
        image: Social image, resolved to a site path for relative values.
        cover: Cover file name inside the document folder.
        updated_at: Optional last-updated date (UTC).
        frontmatter: The raw front-matter table.
    """

    slug: str
    title: str
    published_at: datetime
    source_path: Path
    subtitle: str | None = None
    description: str | None = None
    image: str | None = None
    cover: str | None = None
    updated_at: datetime | None = None
    frontmatter: dict[str, Any] = field(default_factory=dict)

    @property
    def is_folder(self) -> bool:
        """True for ``<slug>/index.md`` documents."""
        return self.source_path.name == INDEX_FILENAME

    @property
    def folder(self) -> Path | None:
        return self.source_path.parent if self.is_folder else None

    @property
    def summary(self) -> str:
        """Short description for feeds: subtitle, then description, then empty."""
        return self.subtitle or self.description or ""

    def assets(self) -> list[Path]:
        """Co-located files beside a folder-form document, sorted."""
        if self.folder is None:
            return []
        return sorted(
            path
            for path in self.folder.iterdir()
            if path.is_file() and path.name != INDEX_FILENAME
        )

    def read_body(self) -> str:
        """Return the document body without its front-matter."""
        _, body = extract_frontmatter(self.source_path.read_text(encoding="utf-8"))
        return body


def build_post(frontmatter: dict[str, Any], slug: str, path: Path) -> PostDocument:
    """Build a PostDocument from front-matter.

    Raises:
        ContentError: If ``title`` or ``publishedAt`` is missing or invalid.
    """
    title = _optional_str(frontmatter.get("title"))
    if not title:
        raise ContentError(path, "Missing required front-matter field: title")
    if frontmatter.get("publishedAt") is None:
        raise ContentError(path, "Missing required front-matter field: publishedAt")
    published_at = parse_date(frontmatter.get("publishedAt"))
    if published_at is None:
        raise ContentError(
            path, f"Invalid publishedAt date: {frontmatter.get('publishedAt')!r}"
        )
    updated_at = None
    if frontmatter.get("updatedAt") is not None:
        updated_at = parse_date(frontmatter["updatedAt"])
        if updated_at is None:
            raise ContentError(
                path, f"Invalid updatedAt date: {frontmatter['updatedAt']!r}"
            )

    slug = _optional_str(frontmatter.get("slug")) or slug
    image = _optional_str(frontmatter.get("image"))
    if image and not image.startswith(("/", "http://", "https://", "//")):
        image = f"/{slug}/{image}"

    return PostDocument(
        slug=slug,
        title=title,
        published_at=published_at,
        source_path=path,
        subtitle=_optional_str(frontmatter.get("subtitle")),
        description=_optional_str(frontmatter.get("description")),
        image=image,
        cover=_optional_str(frontmatter.get("cover")),
        updated_at=updated_at,
        frontmatter=frontmatter,
    )


class DocumentLoader:
    """Discovers and loads content documents.

    Attributes:
        posts_dir: Directory containing content documents.
    """

    def __init__(self, posts_dir: Path):
        self.posts_dir = posts_dir

    def iter_sources(self) -> list[tuple[str, Path]]:
        """Return ``(derived slug, path)`` for every document, folders first."""
        if not self.posts_dir.is_dir():
            return []
        sources: list[tuple[str, Path]] = []
        for index in sorted(self.posts_dir.glob(f"*/{INDEX_FILENAME}")):
            sources.append((index.parent.name, index))
        for path in sorted(self.posts_dir.glob(f"*{CONTENT_SUFFIX}")):
            if path.is_file():
                sources.append((path.stem, path))
        return sources

    def load(self) -> list[PostDocument]:
        """Load every document, sorted by ``publishedAt`` descending.

        Raises:
            ContentError: If any document has invalid front-matter.
        """
        posts: list[PostDocument] = []
        for slug, path in self.iter_sources():
            frontmatter, _ = extract_frontmatter(path.read_text(encoding="utf-8"))
            posts.append(build_post(frontmatter, slug, path))
        posts.sort(key=lambda post: post.published_at, reverse=True)
        return posts


def find_post(posts: list[PostDocument], slug: str) -> PostDocument | None:
    """Return the first document with ``slug``; later duplicates are shadowed."""
    for post in posts:
        if post.slug == slug:
            return post
    return None
