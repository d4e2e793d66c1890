import pytest

from atoll.config import ProjectPaths, load_config, normalize_base_path, resolve_ports
from atoll.errors import ConfigError


def test_defaults_without_config_file(tmp_path):
    config = load_config(tmp_path)
    assert config["port"] == 3100
    assert config["base_path"] == ""
    assert config["rss"]["title"] == config["site"]["name"]


def test_nested_tables_merge_over_defaults(tmp_path):
    (tmp_path / "atoll.yaml").write_text(
        "site:\n  name: Mine\nrss:\n  description: Feed\nbase_path: blog/\nport: 4000\n"
    )
    config = load_config(tmp_path)
    assert config["site"]["name"] == "Mine"
    assert config["site"]["url"] == "https://example.com"
    assert config["rss"] == {"title": "Mine", "description": "Feed"}
    assert config["base_path"] == "/blog"
    assert config["port"] == 4000


def test_invalid_yaml_is_a_config_error(tmp_path):
    (tmp_path / "atoll.yaml").write_text("site: [unclosed\n")
    with pytest.raises(ConfigError):
        load_config(tmp_path)


def test_normalize_base_path():
    assert normalize_base_path("/") == ""
    assert normalize_base_path("") == ""
    assert normalize_base_path("docs") == "/docs"
    assert normalize_base_path("/docs/") == "/docs"


def test_resolve_ports():
    assert resolve_ports({"port": 3100, "ws_port": None}) == (3100, 3101)
    assert resolve_ports({"port": 3100, "ws_port": 9000}) == (3100, 9000)
    assert resolve_ports({"port": 3100, "ws_port": 9000}, http_port=5000) == (5000, 5001)
    assert resolve_ports({"port": 3100}, http_port=5000, ws_port=6000) == (5000, 6000)


def test_project_paths(tmp_path):
    config = load_config(tmp_path)
    config["output_dir"] = "out"
    paths = ProjectPaths.from_config(tmp_path, config)
    assert paths.pages_dir == tmp_path / "src" / "pages"
    assert paths.posts_dir == tmp_path / "src" / "posts"
    assert paths.output_dir == tmp_path / "out"
    assert paths.style_cache_path == tmp_path / ".cache" / "css-modules.json"
    assert paths.manifest_path == tmp_path / "package.json"
