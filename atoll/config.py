"""Project configuration for Atoll.

Configuration lives in ``atoll.yaml`` at the project root and is merged over
``DEFAULT_CONFIG``. Nested tables (``site``, ``rss``) are merged key by key so
a project only needs to set what differs from the defaults.

Key objects:
- load_config: Loads and merges ``atoll.yaml``.
- ProjectPaths: Every directory the pipeline reads from or writes to.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigError

CONFIG_FILENAME = "atoll.yaml"
MANIFEST_FILENAME = "package.json"

DEFAULT_CONFIG: dict[str, Any] = {
    "source_dir": "src",
    "public_dir": "public",
    "output_dir": "dist",
    "cache_dir": ".cache",
    "port": 3100,
    "ws_port": None,
    "base_path": "",
    "cdn_url": "https://esm.sh",
    "site": {
        "name": "Atoll",
        "url": "https://example.com",
        "description": "",
        "author": "",
        "email": "",
    },
    "rss": {},
    "islands": {},
    "element_classes": {},
}


def load_config(project_root: Path) -> dict[str, Any]:
    """Load site configuration from atoll.yaml.

    Args:
        project_root: Root directory of the project.

    Returns:
        Dictionary containing configuration values, with defaults applied.

    Raises:
        ConfigError: If the file is not valid YAML.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    config_path = project_root / CONFIG_FILENAME
    if config_path.exists():
        try:
            with open(config_path, encoding="utf-8") as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid {CONFIG_FILENAME}: {exc}") from exc
        if isinstance(loaded, dict):
            for key, value in loaded.items():
                if isinstance(value, dict) and isinstance(config.get(key), dict):
                    config[key].update(value)
                else:
                    config[key] = value
    site = config["site"]
    rss = config["rss"]
    rss.setdefault("title", site.get("name", ""))
    rss.setdefault("description", site.get("description", ""))
    config["base_path"] = normalize_base_path(config.get("base_path") or "")
    return config


def normalize_base_path(base_path: str) -> str:
    """Return a base path with one leading slash and no trailing slash.

    Examples:
        >>> normalize_base_path("blog/")
        '/blog'

        >>> normalize_base_path("/")
        ''
    """
    stripped = base_path.strip().strip("/")
    return f"/{stripped}" if stripped else ""


def resolve_ports(
    config: dict[str, Any],
    http_port: int | None = None,
    ws_port: int | None = None,
) -> tuple[int, int]:
    """Resolve the HTTP and live-reload ports from CLI overrides and config.

    An explicit ``--port`` without ``--ws-port`` places the websocket on the
    next port so the two never collide.
    """
    base_http = int(http_port or config.get("port", 3100))
    if ws_port is not None:
        return base_http, int(ws_port)
    if http_port is None and config.get("ws_port"):
        return base_http, int(config["ws_port"])
    return base_http, base_http + 1


@dataclass(frozen=True)
class ProjectPaths:
    """Directories used by the build and dev pipelines.

    Attributes:
        root: Project root (contains atoll.yaml and package.json).
        src_dir: Source tree holding pages, posts, styles and components.
        pages_dir: Page templates.
        posts_dir: Content documents.
        styles_dir: Global, unscoped stylesheets.
        public_dir: Files copied verbatim into the output root.
        cache_dir: Generated wrappers and the style mapping artifact.
        output_dir: Static build output.
    """

    root: Path
    src_dir: Path
    pages_dir: Path
    posts_dir: Path
    styles_dir: Path
    public_dir: Path
    cache_dir: Path
    output_dir: Path

    @classmethod
    def from_config(cls, root: Path, config: dict[str, Any]) -> ProjectPaths:
        src_dir = root / config.get("source_dir", "src")
        return cls(
            root=root,
            src_dir=src_dir,
            pages_dir=src_dir / "pages",
            posts_dir=src_dir / "posts",
            styles_dir=src_dir / "styles",
            public_dir=root / config.get("public_dir", "public"),
            cache_dir=root / config.get("cache_dir", ".cache"),
            output_dir=root / config.get("output_dir", "dist"),
        )

    @property
    def manifest_path(self) -> Path:
        return self.root / MANIFEST_FILENAME

    @property
    def style_cache_path(self) -> Path:
        return self.cache_dir / "css-modules.json"
