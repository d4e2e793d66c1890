"""Feed generation for Atoll.

Feeds are generated from the content documents after the pages are written.
Each format is a ``FeedGenerator`` subclass so new formats can be added
without touching the build orchestration.

Classes:
    FeedGenerator: Base class for feed generators.
    RSSGenerator: Generates the RSS 2.0 feed.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .content import PostDocument
from .utils import escape_html, format_rfc2822, join_root_url, prefix_url


class FeedGenerator(ABC):
    """Abstract base class for feed generators."""

    @property
    @abstractmethod
    def filename(self) -> str:
        """Output filename, such as ``rss.xml``."""
        ...

    @abstractmethod
    def generate(
        self,
        posts: Iterable[PostDocument],
        config: dict[str, Any],
    ) -> str | None:
        """Generate feed content.

        Args:
            posts: Documents to include.
            config: Loaded project configuration.

        Returns:
            Feed content, or None when the feed cannot be generated.
        """
        ...

    def write(
        self,
        output_dir: Path,
        posts: Iterable[PostDocument],
        config: dict[str, Any],
    ) -> bool:
        """Generate and write the feed into ``output_dir``.

        Returns:
            True if the feed was written, False if skipped.
        """
        content = self.generate(posts, config)
        if content is None:
            return False
        (output_dir / self.filename).write_text(content, encoding="utf-8")
        return True


def _cdata(text: str) -> str:
    return "<![CDATA[" + text.replace("]]>", "]]]]><![CDATA[>") + "]]>"


class RSSGenerator(FeedGenerator):
    """Generates an RSS 2.0 feed of the content documents, newest first.

    Item links are absolute: the site url, then the base path, then the slug.
    """

    def __init__(self, now: datetime | None = None):
        self.now = now

    @property
    def filename(self) -> str:
        return "rss.xml"

    def post_link(self, post: PostDocument, config: dict[str, Any]) -> str:
        site_url = str(config.get("site", {}).get("url", ""))
        return join_root_url(
            site_url, prefix_url(f"/{post.slug}", config.get("base_path", ""))
        )

    def generate(
        self,
        posts: Iterable[PostDocument],
        config: dict[str, Any],
    ) -> str | None:
        site = config.get("site", {})
        rss = config.get("rss", {})
        base_path = config.get("base_path", "")
        site_url = str(site.get("url", ""))
        home = join_root_url(site_url, prefix_url("/", base_path))
        feed_url = join_root_url(site_url, prefix_url("/rss.xml", base_path))
        built_at = self.now or datetime.now(timezone.utc)

        lines = [
            '<?xml version="1.0" encoding="UTF-8"?>',
            '<rss version="2.0" xmlns:atom="http://www.w3.org/2005/Atom">',
            "<channel>",
            f"<title>{escape_html(str(rss.get('title', '')))}</title>",
            f"<link>{escape_html(home)}</link>",
            f"<description>{escape_html(str(rss.get('description', '')))}</description>",
            f"<language>{escape_html(str(rss.get('language', 'en')))}</language>",
            f"<lastBuildDate>{format_rfc2822(built_at)}</lastBuildDate>",
            f'<atom:link href="{escape_html(feed_url)}" rel="self" type="application/rss+xml"/>',
        ]
        ordered = sorted(posts, key=lambda p: p.published_at, reverse=True)
        for post in ordered:
            link = escape_html(self.post_link(post, config))
            description = post.summary
            lines.extend(
                [
                    "<item>",
                    f"<title>{_cdata(post.title)}</title>",
                    f"<link>{link}</link>",
                    f'<guid isPermaLink="true">{link}</guid>',
                    f"<pubDate>{format_rfc2822(post.published_at)}</pubDate>",
                    f"<description>{_cdata(description)}</description>",
                    "</item>",
                ]
            )
        lines.extend(["</channel>", "</rss>"])
        return "\n".join(lines)
