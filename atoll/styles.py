"""Style module compiler for Atoll.

Scoped style files (``*.module.css``) are compiled one at a time through the
bundler so that generated class names are stable per file. Each pass:

1. Writes a tiny wrapper module importing the style file.
2. Bundles the wrapper in isolation.
3. Appends the emitted CSS to the combined stylesheet.
4. Extracts the ``logical -> generated`` class name object from the emitted
   JavaScript and records it under the file's source path.

The mapping for every file is persisted to ``.cache/css-modules.json``.
Templates resolve class names through ``get_class_name``, which re-reads the
artifact on every call, so a recompile is visible without re-rendering
anything else.
"""

from __future__ import annotations

import json
import re
import tempfile
from dataclasses import dataclass, field
from pathlib import Path

from .config import ProjectPaths
from .protocols import Bundler

STYLE_MODULE_GLOB = "**/*.module.css"
GLOBAL_STYLESHEET = "global.css"

# Matches both ``var a={x:"y"};`` and ``var styles_default = {\n  x: "y"\n};``
_MAPPING_RE = re.compile(r"var\s+[\w$]+\s*=\s*(\{[\s\S]*?\});")
_BARE_KEY_RE = re.compile(r"([{,]\s*)([A-Za-z_$][\w$]*)\s*:")


def extract_class_mapping(script: str) -> dict[str, str] | None:
    """Extract the class name object from compiled wrapper JavaScript.

    Args:
        script: JavaScript emitted for a style module wrapper.

    Returns:
        Mapping of logical class names to generated names, or None when the
        output does not contain a parseable object literal.

    Examples:
        >>> extract_class_mapping('var s={title:"post_title"};export{s as styles};')
        {'title': 'post_title'}
    """
    match = _MAPPING_RE.search(script)
    if not match:
        return None
    literal = _BARE_KEY_RE.sub(r'\1"\2":', match.group(1)).replace("'", '"')
    try:
        mapping = json.loads(literal)
    except ValueError:
        return None
    if not isinstance(mapping, dict):
        return None
    return {str(key): str(value) for key, value in mapping.items()}


def load_class_mappings(cache_path: Path) -> dict[str, dict[str, str]]:
    """Read the whole mapping artifact; a missing or corrupt file reads as empty."""
    try:
        data = json.loads(cache_path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


def get_class_name(cache_path: Path, source_path: str, logical_name: str) -> str:
    """Resolve a generated class name from the mapping artifact.

    The artifact is read on every call.

    Args:
        cache_path: Location of ``css-modules.json``.
        source_path: Style file path relative to the source directory,
            e.g. ``components/post.module.css``.
        logical_name: Class name as written in the style file.

    Returns:
        The generated class name, or an empty string when either the file or
        the class is unknown.
    """
    module = load_class_mappings(cache_path).get(source_path) or {}
    value = module.get(logical_name)
    return value if isinstance(value, str) else ""


@dataclass
class StyleCompileResult:
    """Outcome of one compile pass.

    Attributes:
        css: Generated CSS for every style module, newline-joined.
        mappings: Source path -> (logical -> generated) class names.
        skipped: Style files that contributed no mapping.
    """

    css: str
    mappings: dict[str, dict[str, str]] = field(default_factory=dict)
    skipped: list[Path] = field(default_factory=list)


class StyleModuleCompiler:
    """Compiles scoped style files and maintains the mapping artifact.

    Safe to call repeatedly; every pass fully overwrites the artifact.

    Attributes:
        paths: Project directories.
        bundler: Bundler used to compile each file in isolation.
    """

    def __init__(self, paths: ProjectPaths, bundler: Bundler):
        self.paths = paths
        self.bundler = bundler

    @property
    def cache_path(self) -> Path:
        return self.paths.style_cache_path

    def find_style_modules(self) -> list[Path]:
        """Return every scoped style file under the source tree, sorted."""
        if not self.paths.src_dir.exists():
            return []
        return sorted(
            path for path in self.paths.src_dir.glob(STYLE_MODULE_GLOB) if path.is_file()
        )

    def source_key(self, path: Path) -> str:
        """Key under which a style file's mapping is stored."""
        return path.relative_to(self.paths.src_dir).as_posix()

    def compile(self, minify: bool = False) -> StyleCompileResult:
        """Compile every style module and rewrite the mapping artifact.

        Args:
            minify: Minify the emitted CSS (static builds).

        Returns:
            StyleCompileResult with combined CSS and the new mappings.
        """
        self.paths.cache_dir.mkdir(parents=True, exist_ok=True)
        result = StyleCompileResult(css="")
        chunks: list[str] = []
        for path in self.find_style_modules():
            css, mapping = self.compile_file(path, minify=minify)
            if css:
                chunks.append(css + "\n")
            if mapping is None:
                print(f"Could not extract class names from {self.source_key(path)}; skipping.")
                result.skipped.append(path)
                continue
            result.mappings[self.source_key(path)] = mapping
        result.css = "".join(chunks)
        self.cache_path.write_text(
            json.dumps(result.mappings, indent=2), encoding="utf-8"
        )
        return result

    def compile_file(
        self, path: Path, minify: bool = False
    ) -> tuple[str, dict[str, str] | None]:
        """Compile a single style module in isolation.

        Returns:
            Tuple of (CSS text, class mapping or None if it could not be parsed).
        """
        stem = "css-extract-" + re.sub(r"[^\w-]+", "_", self.source_key(path))
        wrapper = self.paths.cache_dir / f"{stem}.js"
        wrapper.write_text(
            f"import styles from {json.dumps(path.resolve().as_posix())};\n"
            "export { styles };\n",
            encoding="utf-8",
        )
        try:
            with tempfile.TemporaryDirectory(dir=self.paths.cache_dir) as outdir:
                bundle = self.bundler.build(
                    wrapper, Path(outdir), entry_name=stem, minify=minify
                )
                if not bundle.success:
                    print(f"Style module {self.source_key(path)} failed to compile:")
                    if bundle.logs:
                        print(bundle.logs)
                    return "", None
                css_output = bundle.output("css")
                js_output = bundle.output("js")
                css = css_output.text if css_output else ""
                mapping = extract_class_mapping(js_output.text) if js_output else None
                return css, mapping
        finally:
            wrapper.unlink(missing_ok=True)

    def stylesheet(self, minify: bool = False) -> str:
        """Return the site stylesheet: global CSS followed by module CSS."""
        modules_css = self.compile(minify=minify).css
        global_path = self.paths.styles_dir / GLOBAL_STYLESHEET
        global_css = (
            global_path.read_text(encoding="utf-8") if global_path.exists() else ""
        )
        return global_css + "\n" + modules_css
