"""Island dependency resolution and import maps.

Islands are bundled with their third-party imports left external; the
browser resolves them through an import map pointing at a CDN. This module
finds which packages the islands import, filters them to what the project
declares in ``package.json``, and builds the import map and the matching
list of bundler externals.

The rendering runtime (React and its client entry points) is always
externalized, whether or not an island imports it explicitly.
"""

from __future__ import annotations

import json
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING

from markupsafe import Markup

from .errors import ConfigError

if TYPE_CHECKING:
    from .islands import IslandDefinition

# Package -> sub-paths that are always externalized and always mapped.
RUNTIME_MODULES: dict[str, tuple[str, ...]] = {
    "react": ("", "/jsx-runtime", "/jsx-dev-runtime"),
    "react-dom": ("", "/client"),
}

SOURCE_EXTENSIONS = (".tsx", ".ts", ".jsx", ".js", ".mjs")

_BARE_IMPORT_RE = re.compile(r"""(?:import|from)\s+['"]([^'"./][^'"]*)['"]""")
_RELATIVE_IMPORT_RE = re.compile(r"""(?:import|from)\s+['"](\.{1,2}/[^'"]*)['"]""")
_RANGE_PREFIX_RE = re.compile(r"^[\s^~<>=v]+")


def load_manifest(manifest_path: Path) -> dict[str, str]:
    """Return the ``dependencies`` table of a package.json file.

    A missing manifest reads as empty; a malformed one is a configuration
    error.
    """
    if not manifest_path.exists():
        return {}
    try:
        data = json.loads(manifest_path.read_text(encoding="utf-8"))
    except ValueError as exc:
        raise ConfigError(f"Invalid {manifest_path.name}: {exc}") from exc
    deps = data.get("dependencies") if isinstance(data, dict) else None
    if not isinstance(deps, dict):
        return {}
    return {str(name): str(version) for name, version in deps.items()}


def strip_version_range(version: str) -> str:
    """Strip leading range operators from a manifest version.

    Examples:
        >>> strip_version_range("^18.3.1")
        '18.3.1'

        >>> strip_version_range(">=2.0.0")
        '2.0.0'
    """
    return _RANGE_PREFIX_RE.sub("", version.strip())


def package_name(specifier: str) -> str:
    """Normalize an import specifier to its top-level package name.

    Examples:
        >>> package_name("@tanstack/react-query/devtools")
        '@tanstack/react-query'

        >>> package_name("lodash/debounce")
        'lodash'
    """
    parts = specifier.split("/")
    if specifier.startswith("@"):
        return "/".join(parts[:2])
    return parts[0]


def is_runtime_package(name: str) -> bool:
    return name in RUNTIME_MODULES


def _resolve_relative(importer: Path, specifier: str) -> Path | None:
    """Resolve a relative import to a source file, trying known extensions."""
    base = (importer.parent / specifier).resolve()
    if base.is_file() and base.suffix in SOURCE_EXTENSIONS:
        return base
    for ext in SOURCE_EXTENSIONS:
        candidate = base.with_name(base.name + ext)
        if candidate.is_file():
            return candidate
    for ext in SOURCE_EXTENSIONS:
        candidate = base / f"index{ext}"
        if candidate.is_file():
            return candidate
    return None


class DependencyResolver:
    """Finds the declared third-party packages each island imports.

    Source files are scanned statically, following relative imports so that a
    package imported by a helper module counts for the island that uses it.

    Attributes:
        src_dir: Source directory island paths are relative to.
        manifest: Declared dependencies (name -> version range).
    """

    def __init__(self, src_dir: Path, manifest: Mapping[str, str]):
        self.src_dir = src_dir
        self.manifest = dict(manifest)

    def scan_source(self, path: Path) -> set[str]:
        """Return the bare specifiers imported by ``path`` and its relative imports."""
        specifiers: set[str] = set()
        seen: set[Path] = set()
        stack = [path.resolve()]
        while stack:
            current = stack.pop()
            if current in seen or not current.is_file():
                continue
            seen.add(current)
            source = current.read_text(encoding="utf-8")
            specifiers.update(_BARE_IMPORT_RE.findall(source))
            for relative in _RELATIVE_IMPORT_RE.findall(source):
                resolved = _resolve_relative(current, relative)
                if resolved is not None:
                    stack.append(resolved)
        return specifiers

    def dependencies_for(self, island: IslandDefinition) -> list[str]:
        """Declared, non-runtime packages imported by one island, sorted."""
        names: set[str] = set()
        for specifier in self.scan_source(self.src_dir / island.source_path):
            if specifier.startswith("node:"):
                continue
            name = package_name(specifier)
            if is_runtime_package(name):
                continue
            names.add(name)
        return sorted(name for name in names if name in self.manifest)

    def resolve_island_dependencies(
        self, islands: Iterable[IslandDefinition]
    ) -> set[str]:
        """Union of declared packages imported by any of ``islands``."""
        deps: set[str] = set()
        for island in islands:
            deps.update(self.dependencies_for(island))
        return deps


def _manifest_version(manifest: Mapping[str, str], name: str) -> str | None:
    version = manifest.get(name)
    return strip_version_range(version) if version else None


def build_import_map(
    manifest: Mapping[str, str],
    extra_deps: Iterable[str] = (),
    cdn_url: str = "https://esm.sh",
) -> dict[str, str]:
    """Build the ``imports`` table of an import map.

    Args:
        manifest: Declared dependencies (name -> version range).
        extra_deps: Packages imported by islands, beyond the runtime.
        cdn_url: Base URL of the ESM CDN.

    Returns:
        Mapping of module specifier to versioned CDN URL.

    Raises:
        ConfigError: If a runtime package has no declared version.
    """
    base = cdn_url.rstrip("/")
    imports: dict[str, str] = {}
    for name, subpaths in RUNTIME_MODULES.items():
        version = _manifest_version(manifest, name)
        if not version:
            raise ConfigError(
                f"Missing dependency: {name}. Add it to package.json dependencies."
            )
        for subpath in subpaths:
            imports[name + subpath] = f"{base}/{name}@{version}{subpath}"
    for name in sorted(set(extra_deps)):
        if name in imports:
            continue
        version = _manifest_version(manifest, name)
        if not version:
            print(f"Skipping undeclared island dependency: {name}")
            continue
        imports[name] = f"{base}/{name}@{version}"
    return imports


def external_module_names(
    extra_deps: Iterable[str] = (), manifest: Mapping[str, str] | None = None
) -> list[str]:
    """Specifiers the bundler must leave external.

    The same set as the keys of ``build_import_map`` for the same arguments.
    """
    externals = [
        name + subpath
        for name, subpaths in RUNTIME_MODULES.items()
        for subpath in subpaths
    ]
    for name in sorted(set(extra_deps)):
        if name in externals:
            continue
        if manifest is not None and not manifest.get(name):
            continue
        externals.append(name)
    return externals


def import_map_tag(imports: Mapping[str, str]) -> Markup:
    """Render an import map as a script tag."""
    payload = json.dumps({"imports": dict(imports)}, indent=2).replace("</", "<\\/")
    return Markup(f'<script type="importmap">\n{payload}\n</script>')
