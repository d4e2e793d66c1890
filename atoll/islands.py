"""Islands: registry, hydration wrappers and bundling.

An island is a React component hydrated independently on an otherwise static
page. Templates place a placeholder element carrying the marker attribute
(``data-island="<name>"``); the generated hydration wrapper mounts the
component into every such element once the browser is idle.

Key objects:
- IslandDefinition: One registered island.
- parse_island_registry: Builds the registry from the ``islands`` config table.
- detect_islands: Names of islands present in rendered markup.
- generate_wrapper: Hydration entry module for an island.
- IslandBundler: Bundles wrappers for static output or on demand in dev.
"""

from __future__ import annotations

import json
import re
import tempfile
from collections.abc import Callable, Collection, Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from markupsafe import Markup, escape

from .bundler import BundleResult
from .config import ProjectPaths
from .errors import ConfigError
from .protocols import Bundler

MARKER_ATTRIBUTE = "data-island"
WRAPPER_SUFFIX = "-wrapper.js"
ISLANDS_DIR = "islands"

_MARKER_RE = re.compile(MARKER_ATTRIBUTE + r'="([^"]+)"')

BundleTarget = Literal["static", "dev"]


@dataclass(frozen=True)
class IslandDefinition:
    """A registered island.

    Attributes:
        name: Unique island name; used in markup, file names and routes.
        source_path: Component module path relative to the source directory.
        export_name: Named export to mount, or None for the default export.
    """

    name: str
    source_path: str
    export_name: str | None = None

    @property
    def placeholder_name(self) -> str:
        """Template callable name, e.g. ``Counter`` for ``counter``."""
        return self.name[:1].upper() + self.name[1:]


def parse_island_registry(entries: Mapping[str, Any]) -> dict[str, IslandDefinition]:
    """Build the island registry from the ``islands`` config table.

    Each value is either a path (default export) or a ``[path, exportName]``
    pair (named export).

    Raises:
        ConfigError: If an entry has an unsupported shape.
    """
    registry: dict[str, IslandDefinition] = {}
    for name, entry in (entries or {}).items():
        if not re.fullmatch(r"[A-Za-z][\w-]*", str(name)):
            raise ConfigError(f"Invalid island name: {name!r}")
        if isinstance(entry, str):
            registry[name] = IslandDefinition(name=name, source_path=entry)
        elif (
            isinstance(entry, (list, tuple))
            and len(entry) == 2
            and all(isinstance(part, str) for part in entry)
        ):
            registry[name] = IslandDefinition(
                name=name, source_path=entry[0], export_name=entry[1]
            )
        else:
            raise ConfigError(
                f"Island {name!r} must be a path or a [path, exportName] pair"
            )
    return registry


def placeholder(name: str) -> Markup:
    """Markup for an island mount point."""
    return Markup(f'<div {MARKER_ATTRIBUTE}="{escape(name)}"></div>')


def placeholder_callables(
    registry: Mapping[str, IslandDefinition],
) -> dict[str, Callable[[], Markup]]:
    """Template globals rendering each island's placeholder, keyed by capitalized name."""
    return {
        island.placeholder_name: (lambda name=island.name: placeholder(name))
        for island in registry.values()
    }


def detect_islands(html: str) -> list[str]:
    """Return island names found in markup, de-duplicated in order of first appearance.

    Examples:
        >>> detect_islands('<div data-island="b"></div><div data-island="a"></div><div data-island="b"></div>')
        ['b', 'a']
    """
    found: list[str] = []
    for name in _MARKER_RE.findall(html):
        if name not in found:
            found.append(name)
    return found


def generate_wrapper(island: IslandDefinition, src_dir: Path) -> str:
    """Generate the hydration entry module for an island.

    The module mounts the component into every element whose marker attribute
    equals the island name, deferring to ``requestIdleCallback`` when the
    browser provides it.

    Args:
        island: Island to hydrate.
        src_dir: Source directory the island path is relative to.

    Returns:
        JavaScript module source.
    """
    component_path = json.dumps((src_dir / island.source_path).resolve().as_posix())
    if island.export_name:
        import_statement = (
            f"import {{ {island.export_name} as Component }} from {component_path}"
        )
    else:
        import_statement = f"import Component from {component_path}"
    selector = json.dumps(f'[{MARKER_ATTRIBUTE}="{island.name}"]')
    return f"""import {{ createElement }} from 'react'
import {{ createRoot }} from 'react-dom/client'
{import_statement}

const hydrate = () => {{
  document.querySelectorAll({selector}).forEach(el => {{
    createRoot(el).render(createElement(Component))
  }})
}}

if ('requestIdleCallback' in window) {{
  requestIdleCallback(hydrate)
}} else {{
  hydrate()
}}
"""


def island_tags(
    names: Iterable[str],
    url: Callable[[str], str],
    styled: Collection[str] | None = None,
) -> Markup:
    """Stylesheet links and module scripts for the given islands.

    Args:
        names: Island names, in page order.
        url: Base-path aware URL helper.
        styled: Islands known to have a stylesheet; None links every island's.
    """
    names = list(names)
    if not names:
        return Markup("")
    links = [
        f'<link rel="stylesheet" href="{url(f"/{ISLANDS_DIR}/{name}.css")}">'
        for name in names
        if styled is None or name in styled
    ]
    scripts = [
        f'<script type="module" src="{url(f"/{ISLANDS_DIR}/{name}.js")}"></script>'
        for name in names
    ]
    return Markup("\n".join(links + scripts))


@dataclass
class IslandBuildReport:
    """Outcome of bundling every registered island.

    Attributes:
        built: Islands whose bundle was written.
        failed: Islands that failed to bundle and were skipped.
        styled: Islands that produced a stylesheet.
        removed_wrappers: Stale wrapper files deleted before bundling.
    """

    built: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    styled: set[str] = field(default_factory=set)
    removed_wrappers: list[str] = field(default_factory=list)


class IslandBundler:
    """Bundles hydration wrappers for the browser.

    Static builds write ``islands/<name>.js`` (and ``.css`` when the island
    imports styles) into the output tree. Dev builds compile per request and
    return the text without touching the output tree.

    Attributes:
        paths: Project directories.
        bundler: Underlying bundler.
    """

    def __init__(self, paths: ProjectPaths, bundler: Bundler):
        self.paths = paths
        self.bundler = bundler

    @property
    def output_dir(self) -> Path:
        return self.paths.output_dir / ISLANDS_DIR

    def wrapper_path(self, name: str) -> Path:
        return self.paths.cache_dir / f"{name}{WRAPPER_SUFFIX}"

    def write_wrapper(self, name: str, wrapper_source: str) -> Path:
        self.paths.cache_dir.mkdir(parents=True, exist_ok=True)
        path = self.wrapper_path(name)
        path.write_text(wrapper_source, encoding="utf-8")
        return path

    def cleanup_stale_wrappers(
        self, registry: Mapping[str, IslandDefinition]
    ) -> list[str]:
        """Delete cached wrappers for islands no longer in the registry.

        Returns:
            Names of the islands whose wrappers were removed.
        """
        if not self.paths.cache_dir.exists():
            return []
        removed: list[str] = []
        for path in sorted(self.paths.cache_dir.glob(f"*{WRAPPER_SUFFIX}")):
            name = path.name[: -len(WRAPPER_SUFFIX)]
            if name not in registry:
                path.unlink()
                removed.append(name)
        return removed

    def bundle(
        self,
        name: str,
        wrapper_source: str,
        externals: Iterable[str],
        target: BundleTarget = "static",
    ) -> BundleResult:
        """Bundle one island's wrapper.

        Args:
            name: Island name; becomes the output file stem.
            wrapper_source: Generated hydration module.
            externals: Module specifiers left to the import map.
            target: "static" writes minified files into the output tree;
                "dev" compiles unminified into a scratch directory.

        Returns:
            BundleResult; for dev builds the outputs' text is the response.
        """
        entry = self.write_wrapper(name, wrapper_source)
        externals = list(externals)
        if target == "static":
            return self.bundler.build(
                entry,
                self.output_dir,
                entry_name=name,
                minify=True,
                externals=externals,
            )
        with tempfile.TemporaryDirectory(dir=self.paths.cache_dir) as outdir:
            return self.bundler.build(
                entry,
                Path(outdir),
                entry_name=name,
                minify=False,
                externals=externals,
                define={"process.env.NODE_ENV": '"development"'},
            )

    def bundle_all(
        self,
        registry: Mapping[str, IslandDefinition],
        externals_for: Callable[[IslandDefinition], list[str]],
    ) -> IslandBuildReport:
        """Bundle every registered island for a static build.

        Failures are printed with the bundler output and skipped.
        """
        report = IslandBuildReport()
        report.removed_wrappers = self.cleanup_stale_wrappers(registry)
        for name, island in registry.items():
            wrapper = generate_wrapper(island, self.paths.src_dir)
            result = self.bundle(name, wrapper, externals_for(island), target="static")
            if not result.success:
                print(f"Failed to bundle island {name}:")
                if result.logs:
                    print(result.logs)
                report.failed.append(name)
                continue
            if result.logs:
                print(f"Island {name} logs: {result.logs}")
            report.built.append(name)
            if result.output("css") is not None:
                report.styled.add(name)
        return report
