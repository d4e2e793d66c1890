"""Page pipeline for Atoll.

Page templates are Jinja files in ``src/pages``. Discovery builds an explicit
registry (name -> PageDefinition); the reserved ``post`` template renders
content documents instead of a route of its own.

After a page or document renders, ``HtmlAssembler`` scans the markup for
island markers and injects only what the page needs: an import map scoped to
the islands' dependencies in ``<head>``, and the islands' stylesheet and
script tags before ``</body>``. Pages with no islands get neither.

Key objects:
- TemplateEngine: Jinja2 environment with Atoll's template globals.
- PageDefinition / discover_pages: The page registry.
- HtmlAssembler: Final document assembly.
"""

from __future__ import annotations

from collections.abc import Callable, Collection, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from jinja2 import (
    Environment,
    FileSystemLoader,
    TemplateNotFound,
    TemplateSyntaxError,
    select_autoescape,
)
from markupsafe import Markup, escape

from .config import ProjectPaths
from .content import PostDocument
from .dependencies import DependencyResolver, build_import_map, import_map_tag
from .errors import BuildError, ConfigError
from .islands import (
    IslandDefinition,
    detect_islands,
    island_tags,
    placeholder,
    placeholder_callables,
)
from .renderers import CompiledDocument
from .styles import get_class_name
from .utils import inject_before, prefix_url

DOCUMENT_TEMPLATE = "post"
PAGE_SUFFIXES = (".html.jinja", ".jinja", ".html")
INDEX_PAGE = "index"
NOT_FOUND_PAGE = "404"

_IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".gif", ".webp", ".avif"}


def page_name(path: Path) -> str | None:
    """Page name for a template file, or None if it is not a page template."""
    for suffix in PAGE_SUFFIXES:
        if path.name.endswith(suffix):
            return path.name[: -len(suffix)]
    return None


def page_route(name: str, url: Callable[[str], str]) -> str:
    """Route path for a page name.

    Examples:
        >>> page_route("index", lambda p: p)
        '/'

        >>> page_route("about", lambda p: "/blog" + p)
        '/blog/about'
    """
    if name == INDEX_PAGE:
        return url("/")
    return url(f"/{name}")


def page_output_path(name: str) -> str:
    """Output file, relative to the output root, for a page name."""
    if name == INDEX_PAGE:
        return "index.html"
    if name == NOT_FOUND_PAGE:
        return "404.html"
    return f"{name}/index.html"


def format_date(value: datetime | None, fmt: str = "%B %-d, %Y") -> str:
    """Human-readable date for templates, e.g. ``June 1, 2024``."""
    if value is None:
        return ""
    try:
        return value.strftime(fmt)
    except ValueError:
        # %-d is not supported everywhere
        return value.strftime(fmt.replace("%-d", "%d"))


def _format_error_message(exc: Exception) -> str:
    """Format a rendering exception into a user-friendly message."""
    error_type = type(exc).__name__
    if error_type == "UndefinedError":
        return f"Undefined variable: {exc}"
    if error_type == "TypeError":
        return f"Type error: {exc}"
    if error_type == "AttributeError":
        return f"Attribute error: {exc}"
    return f"{error_type}: {exc}"


def cx(*names: Any) -> str:
    """Join truthy class names with spaces."""
    return " ".join(str(name) for name in names if name)


class TemplateEngine:
    """Template rendering engine using Jinja2.

    Templates resolve from ``src/pages`` first, then from ``src`` so layouts
    and partials can live anywhere in the source tree.

    Attributes:
        paths: Project directories.
        config: Loaded configuration.
        islands: Island registry.
        env: Jinja2 environment.
    """

    def __init__(
        self,
        paths: ProjectPaths,
        config: dict[str, Any],
        islands: Mapping[str, IslandDefinition] | None = None,
    ):
        self.paths = paths
        self.config = config
        self.base_path = config.get("base_path", "")
        self.islands = dict(islands or {})
        self.env = Environment(
            loader=FileSystemLoader([paths.pages_dir, paths.src_dir]),
            autoescape=select_autoescape(["html", "xml", "jinja"]),
            auto_reload=True,
        )
        self.element_classes = self._parse_element_classes(
            config.get("element_classes") or {}
        )
        self._install_globals()

    def _install_globals(self) -> None:
        """Install global variables and functions in the Jinja environment."""
        self.env.globals["site"] = self.config.get("site", {})
        self.env.globals["rss"] = self.config.get("rss", {})
        self.env.globals["url"] = self.url
        self.env.globals["class_name"] = self.class_name
        self.env.globals["cx"] = cx
        self.env.globals["island"] = placeholder
        self.env.globals["format_date"] = format_date
        self.env.globals.update(placeholder_callables(self.islands))
        self.env.filters["format_date"] = format_date

    @staticmethod
    def _parse_element_classes(table: Mapping[str, Any]) -> dict[str, tuple[str, str]]:
        parsed: dict[str, tuple[str, str]] = {}
        for element, target in table.items():
            source, sep, logical = str(target).rpartition(":")
            if not sep or not source or not logical:
                raise ConfigError(
                    f"element_classes.{element} must look like 'file.module.css:className'"
                )
            parsed[str(element)] = (source, logical)
        return parsed

    def url(self, path: str) -> str:
        """Prefix a site path with the configured base path."""
        return prefix_url(path, self.base_path)

    def class_name(self, source_path: str, logical_name: str) -> str:
        """Generated class name for a style module class; empty when unknown."""
        return get_class_name(self.paths.style_cache_path, source_path, logical_name)

    def element_class(self, element: str) -> str:
        """Class names configured for a Markdown element."""
        target = self.element_classes.get(element)
        if target is None:
            return ""
        return self.class_name(*target)

    def template_name(self, name: str) -> str:
        """Resolve a page name to an existing template file name."""
        for suffix in PAGE_SUFFIXES:
            candidate = f"{name}{suffix}"
            if (self.paths.pages_dir / candidate).exists():
                return candidate
        raise TemplateNotFound(name)

    def render_template(self, template_name: str, **props: Any) -> str:
        """Render a template with the given props.

        Raises:
            BuildError: If the template fails to render.
        """
        source = self.paths.pages_dir / template_name
        try:
            return self.env.get_template(template_name).render(**props)
        except TemplateNotFound:
            raise
        except TemplateSyntaxError as exc:
            raise BuildError(
                Path(exc.filename) if exc.filename else source,
                f"Template syntax error on line {exc.lineno}: {exc.message}",
                exc,
            ) from exc
        except BuildError:
            raise
        except Exception as exc:
            raise BuildError(source, _format_error_message(exc), exc) from exc

    def render_document(
        self,
        post: PostDocument,
        document: CompiledDocument,
        cover: Markup | None = None,
        template_name: str | None = None,
        **props: Any,
    ) -> str:
        """Render a content document through the reserved ``post`` template."""
        content = document.render(url=self.url, class_for=self.element_class)
        return self.render_template(
            template_name or self.template_name(DOCUMENT_TEMPLATE),
            meta=post,
            post=post,
            content=content,
            cover=cover,
            **props,
        )

    def load_cover(self, post: PostDocument) -> Markup | None:
        """Render a document's cover.

        SVG covers are inlined, raster images become ``<img>`` tags, and
        ``.html``/``.jinja`` fragments are rendered as markup. Covers must live
        in the document folder.
        """
        if not post.cover or post.folder is None:
            return None
        path = post.folder / post.cover
        suffix = path.suffix.lower()
        if suffix in _IMAGE_SUFFIXES:
            src = escape(self.url(f"/{post.slug}/{post.cover}"))
            return Markup(f'<img src="{src}" alt="">')
        if not path.is_file():
            raise BuildError(post.source_path, f"Cover not found: {post.cover}")
        text = path.read_text(encoding="utf-8")
        if suffix == ".svg":
            return Markup(f"<div>{text}</div>")
        if suffix == ".jinja":
            return Markup(self.env.from_string(text).render(meta=post, post=post))
        return Markup(text)


@dataclass(frozen=True)
class PageDefinition:
    """A page in the registry.

    Attributes:
        name: Page name (template file stem).
        route_path: Base-path aware route.
        template_name: Template file inside ``src/pages``.
    """

    name: str
    route_path: str
    template_name: str
    engine: TemplateEngine = field(repr=False, compare=False)

    @property
    def output_path(self) -> str:
        return page_output_path(self.name)

    def render(self, **props: Any) -> str:
        return self.engine.render_template(self.template_name, **props)


def discover_pages(engine: TemplateEngine) -> dict[str, PageDefinition]:
    """Build the page registry from the files in ``src/pages``.

    The reserved document template is excluded.
    """
    pages_dir = engine.paths.pages_dir
    registry: dict[str, PageDefinition] = {}
    if not pages_dir.is_dir():
        return registry
    for path in sorted(pages_dir.iterdir()):
        if not path.is_file():
            continue
        name = page_name(path)
        if not name or name == DOCUMENT_TEMPLATE or name.startswith("_"):
            continue
        if name in registry:
            continue
        registry[name] = PageDefinition(
            name=name,
            route_path=page_route(name, engine.url),
            template_name=path.name,
            engine=engine,
        )
    return registry


class HtmlAssembler:
    """Turns rendered markup into a final HTML document.

    Attributes:
        islands: Island registry.
        resolver: Dependency resolver for page-scoped import maps.
        manifest: Declared dependencies.
        url: Base-path aware URL helper.
        cdn_url: ESM CDN base URL.
        styled: Islands known to have a stylesheet; None links all.
    """

    def __init__(
        self,
        islands: Mapping[str, IslandDefinition],
        resolver: DependencyResolver,
        manifest: Mapping[str, str],
        url: Callable[[str], str],
        cdn_url: str = "https://esm.sh",
        styled: Collection[str] | None = None,
    ):
        self.islands = islands
        self.resolver = resolver
        self.manifest = manifest
        self.url = url
        self.cdn_url = cdn_url
        self.styled = styled

    def used_islands(self, markup: str) -> list[str]:
        """Registered islands present in the markup, in order of first appearance."""
        used: list[str] = []
        for name in detect_islands(markup):
            if name in self.islands:
                used.append(name)
            else:
                print(f"Unknown island in markup: {name}")
        return used

    def import_map_for(self, names: list[str]) -> dict[str, str]:
        deps = self.resolver.resolve_island_dependencies(
            self.islands[name] for name in names
        )
        return build_import_map(self.manifest, deps, self.cdn_url)

    def assemble(self, markup: str, live_reload: str = "") -> str:
        """Produce the final document for rendered markup.

        Args:
            markup: Rendered page or document markup.
            live_reload: Optional script injected before ``</body>`` (dev).

        Returns:
            Complete HTML document.
        """
        html = markup
        if not html.lstrip()[:9].lower().startswith("<!doctype"):
            html = "<!DOCTYPE html>" + html
        names = self.used_islands(markup)
        if names:
            html = inject_before(
                html, "</head>", import_map_tag(self.import_map_for(names))
            )
            html = inject_before(
                html, "</body>", island_tags(names, self.url, self.styled)
            )
        return inject_before(html, "</body>", live_reload)
