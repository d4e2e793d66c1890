"""Static build for Atoll.

This module turns a project into a deployable directory. The steps run in a
fixed order, each depending on the previous ones:

1. Clean the output directory.
2. Copy ``public/`` verbatim.
3. Compile style modules and write ``styles.css`` (this also refreshes the
   class-name mapping artifact that templates read while rendering).
4. Resolve island dependencies, remove stale wrappers, bundle every island.
5. Render every page.
6. Render every content document and copy its co-located assets.
7. Write the RSS feed.

A failure part way through leaves the output directory partially written.

Key objects:
- Site: The collaborators shared by the build and the dev server.
- build_site: Main function to build the entire site.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from jinja2 import TemplateNotFound

from .bundler import EsbuildBundler
from .config import ProjectPaths, load_config
from .content import DocumentLoader, PostDocument
from .dependencies import (
    DependencyResolver,
    build_import_map,
    external_module_names,
    load_manifest,
)
from .errors import BuildError
from .feeds import RSSGenerator
from .islands import IslandBuildReport, IslandBundler, IslandDefinition, parse_island_registry
from .pages import DOCUMENT_TEMPLATE, HtmlAssembler, TemplateEngine, discover_pages
from .protocols import Bundler
from .renderers import compile_document
from .styles import StyleModuleCompiler
from .utils import copy_tree, ensure_clean_dir


@dataclass
class Site:
    """Configuration and collaborators for one project.

    Built once per command; the dev server keeps one for its lifetime.

    Attributes:
        config: Loaded configuration.
        paths: Project directories.
        bundler: Bundler used for styles and islands.
        islands: Island registry, parsed once from config.
        manifest: Declared JavaScript dependencies.
        resolver: Island dependency resolver.
        engine: Template engine.
        styles: Style module compiler.
        island_bundler: Island bundler.
    """

    config: dict[str, Any]
    paths: ProjectPaths
    bundler: Bundler
    islands: dict[str, IslandDefinition]
    manifest: dict[str, str]
    resolver: DependencyResolver
    engine: TemplateEngine
    styles: StyleModuleCompiler
    island_bundler: IslandBundler

    @classmethod
    def load(
        cls,
        project_root: Path,
        bundler: Bundler | None = None,
        output_dir_override: Path | None = None,
    ) -> Site:
        """Load configuration and wire up the collaborators.

        Raises:
            ConfigError: If the configuration or island registry is invalid.
        """
        config = load_config(project_root)
        paths = ProjectPaths.from_config(project_root, config)
        if output_dir_override is not None:
            paths = dataclasses.replace(paths, output_dir=output_dir_override)
        bundler = bundler or EsbuildBundler(project_root)
        islands = parse_island_registry(config.get("islands") or {})
        manifest = load_manifest(paths.manifest_path)
        return cls(
            config=config,
            paths=paths,
            bundler=bundler,
            islands=islands,
            manifest=manifest,
            resolver=DependencyResolver(paths.src_dir, manifest),
            engine=TemplateEngine(paths, config, islands),
            styles=StyleModuleCompiler(paths, bundler),
            island_bundler=IslandBundler(paths, bundler),
        )

    @property
    def cdn_url(self) -> str:
        return str(self.config.get("cdn_url") or "https://esm.sh")

    def externals_for(self, island: IslandDefinition) -> list[str]:
        """Module specifiers left external when bundling ``island``."""
        deps = self.resolver.dependencies_for(island)
        return external_module_names(deps, self.manifest)

    def assembler(self, styled: set[str] | None = None) -> HtmlAssembler:
        return HtmlAssembler(
            self.islands,
            self.resolver,
            self.manifest,
            self.engine.url,
            cdn_url=self.cdn_url,
            styled=styled,
        )

    def load_posts(self) -> list[PostDocument]:
        return DocumentLoader(self.paths.posts_dir).load()

    def render_post(self, post: PostDocument, **props: Any) -> str:
        """Render a content document through the ``post`` template.

        Raises:
            BuildError: If the template is missing or rendering fails.
        """
        try:
            template_name = self.engine.template_name(DOCUMENT_TEMPLATE)
        except TemplateNotFound as exc:
            raise BuildError(
                self.paths.pages_dir,
                f"Missing document template '{DOCUMENT_TEMPLATE}'",
                exc,
            ) from exc
        compiled = compile_document(post.read_body())
        cover = self.engine.load_cover(post)
        return self.engine.render_document(
            post, compiled, cover, template_name=template_name, **props
        )


@dataclass
class BuildResult:
    """Result of a site build operation.

    Attributes:
        output_dir: Directory where the site was built.
        pages: Output files written for pages, relative to output_dir.
        posts: Every content document, newest first.
        islands: Island bundling report.
        public_files: Number of files copied from ``public/``.
    """

    output_dir: Path
    pages: list[str] = field(default_factory=list)
    posts: list[PostDocument] = field(default_factory=list)
    islands: IslandBuildReport = field(default_factory=IslandBuildReport)
    public_files: int = 0


def _write(output_dir: Path, relative: str, content: str) -> Path:
    target = output_dir / relative
    target.parent.mkdir(parents=True, exist_ok=True)
    with open(target, "w", encoding="utf-8") as f:
        f.write(content)
    return target


def build_site(
    project_root: Path,
    output_dir_override: Path | None = None,
    bundler: Bundler | None = None,
) -> BuildResult:
    """Build the entire static site.

    Args:
        project_root: Root directory of the project.
        output_dir_override: Optional path to write the build output instead
            of the configured output_dir.
        bundler: Bundler to use instead of the esbuild CLI.

    Returns:
        BuildResult describing what was written.

    Raises:
        ConfigError: If configuration is invalid or a runtime package is
            undeclared.
        BuildError: If a template or document fails to render.
    """
    site = Site.load(project_root, bundler, output_dir_override)
    paths = site.paths
    output_dir = paths.output_dir
    result = BuildResult(output_dir=output_dir)

    ensure_clean_dir(output_dir)
    result.public_files = copy_tree(paths.public_dir, output_dir)
    print(f"Copied {result.public_files} public file(s)")

    _write(output_dir, "styles.css", site.styles.stylesheet(minify=True))
    print("Wrote styles.css")

    if site.islands:
        # Fails fast when the runtime packages are not declared.
        build_import_map(site.manifest, (), site.cdn_url)
    result.islands = site.island_bundler.bundle_all(site.islands, site.externals_for)
    if site.islands:
        print(
            f"Bundled {len(result.islands.built)} island(s)"
            + (f", {len(result.islands.failed)} failed" if result.islands.failed else "")
        )

    posts = site.load_posts()
    result.posts = posts
    assembler = site.assembler(styled=result.islands.styled)

    for page in discover_pages(site.engine).values():
        html = assembler.assemble(page.render(posts=posts))
        _write(output_dir, page.output_path, html)
        result.pages.append(page.output_path)
    print(f"Rendered {len(result.pages)} page(s)")

    for post in posts:
        html = assembler.assemble(site.render_post(post, posts=posts))
        _write(output_dir, f"{post.slug}/index.html", html)
        for asset in post.assets():
            copy_to = output_dir / post.slug / asset.name
            copy_to.write_bytes(asset.read_bytes())
    print(f"Rendered {len(posts)} document(s)")

    if RSSGenerator().write(output_dir, posts, site.config):
        print("Wrote rss.xml")
    return result
