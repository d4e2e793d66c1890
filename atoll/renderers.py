"""Document compiler for Atoll.

Markdown bodies are compiled once into a mistune token tree
(``CompiledDocument``) and rendered to HTML on demand. Rendering resolves
element class names through the style module mapping at render time, so the
same compiled document picks up recompiled styles.

Raw HTML passes through untouched, which is how documents embed island
placeholders (``<div data-island="counter"></div>``).
"""

from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import mistune
from markupsafe import Markup
from mistune.core import BlockState
from pygments import highlight
from pygments.formatters import HtmlFormatter
from pygments.lexers import get_lexer_by_name
from pygments.util import ClassNotFound

from .utils import escape_html

PLUGINS = ["strikethrough", "table", "url"]

ClassResolver = Callable[[str], str]
UrlHelper = Callable[[str], str]


def _generate_heading_id(text: str) -> str:
    """Generate a URL-friendly ID from heading text.

    Args:
        text: The heading text (may contain inline markup).

    Returns:
        URL-friendly slug suitable for anchor links.
    """
    slug = re.sub(r"<[^>]+>", "", text).lower().strip()
    slug = re.sub(r"[^\w\s-]", "", slug)
    slug = re.sub(r"[-\s]+", "-", slug)
    return slug.strip("-")


def _is_external(url: str) -> bool:
    return url.startswith(("http://", "https://", "//"))


def _no_classes(element: str) -> str:
    return ""


def _identity(path: str) -> str:
    return path


class _DocumentRenderer(mistune.HTMLRenderer):
    """HTML renderer for content documents.

    Adds heading anchors, Pygments highlighting, base-path aware internal
    links and images, new-tab external links, and per-element classes.
    """

    def __init__(self, url: UrlHelper, class_for: ClassResolver):
        super().__init__(escape=False)
        self.url = url
        self.class_for = class_for
        self._heading_id_counts: dict[str, int] = {}

    def _class_attr(self, element: str, extra: str = "") -> str:
        names = " ".join(part for part in (self.class_for(element), extra) if part)
        return f' class="{escape_html(names)}"' if names else ""

    def _local(self, url: str) -> str:
        if url.startswith("/"):
            return self.url(url)
        return url

    def heading(self, text: str, level: int, **attrs: Any) -> str:
        base_id = _generate_heading_id(text)
        if base_id in self._heading_id_counts:
            self._heading_id_counts[base_id] += 1
            heading_id = f"{base_id}-{self._heading_id_counts[base_id]}"
        else:
            self._heading_id_counts[base_id] = 0
            heading_id = base_id
        tag = f"h{level}"
        return f'<{tag} id="{heading_id}"{self._class_attr(tag)}>{text}</{tag}>\n'

    def paragraph(self, text: str) -> str:
        return f"<p{self._class_attr('p')}>{text}</p>\n"

    def block_quote(self, text: str) -> str:
        return f"<blockquote{self._class_attr('blockquote')}>\n{text}</blockquote>\n"

    def link(self, text: str, url: str, title: str | None = None) -> str:
        href = self.safe_url(self._local(url))
        attrs = f' href="{href}"{self._class_attr("a")}'
        if _is_external(url):
            label = title or f"Open in new tab: {url}"
            attrs += (
                f' target="_blank" rel="noopener noreferrer" title="{escape_html(label)}"'
            )
        elif title:
            attrs += f' title="{escape_html(title)}"'
        return f"<a{attrs}>{text}</a>"

    def image(self, text: str, url: str, title: str | None = None) -> str:
        src = self.safe_url(self._local(url))
        alt = escape_html(re.sub(r"<[^>]+>", "", text))
        attrs = f' src="{src}" alt="{alt}"{self._class_attr("img")}'
        if title:
            attrs += f' title="{escape_html(title)}"'
        return f"<img{attrs} />"

    def codespan(self, text: str) -> str:
        return f"<code{self._class_attr('code')}>{escape_html(text)}</code>"

    def block_code(self, code: str, info: str | None = None) -> str:
        """Render a code block with Pygments syntax highlighting when a language is given."""
        css_class = self.class_for("pre")
        lang = info.split()[0] if info and info.strip() else None
        if lang:
            try:
                lexer = get_lexer_by_name(lang, stripall=True)
            except ClassNotFound:
                lexer = None
            if lexer is not None:
                formatter = HtmlFormatter(
                    cssclass=" ".join(part for part in ("highlight", css_class) if part)
                )
                return highlight(code, lexer, formatter)
        lang_class = f"language-{lang}" if lang else ""
        return (
            f"<pre{self._class_attr('pre')}><code{self._class_attr('code', lang_class)}>"
            f"{escape_html(code)}</code></pre>\n"
        )


@dataclass
class CompiledDocument:
    """A parsed document body, renderable any number of times.

    Attributes:
        tokens: mistune block token tree.
    """

    tokens: list[dict[str, Any]]

    def render(
        self,
        url: UrlHelper = _identity,
        class_for: ClassResolver = _no_classes,
    ) -> Markup:
        """Render the token tree to HTML.

        Args:
            url: Base-path aware URL helper for internal links and images.
            class_for: Resolves an element name (``a``, ``pre``...) to the
                class names it should carry.

        Returns:
            Markup-safe HTML.
        """
        renderer = _DocumentRenderer(url, class_for)
        # Registers the plugins' render functions on this renderer instance.
        mistune.create_markdown(renderer=renderer, plugins=PLUGINS)
        return Markup(renderer(self.tokens, BlockState()))


def compile_document(source: str) -> CompiledDocument:
    """Parse a Markdown body into a renderable token tree."""
    parser = mistune.create_markdown(renderer="ast", plugins=PLUGINS)
    return CompiledDocument(tokens=parser(source))
