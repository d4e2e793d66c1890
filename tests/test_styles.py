import json

from atoll.config import ProjectPaths, load_config
from atoll.styles import (
    StyleModuleCompiler,
    extract_class_mapping,
    get_class_name,
    load_class_mappings,
)

from conftest import FakeBundler, write


def _compiler(root, bundler):
    paths = ProjectPaths.from_config(root, load_config(root))
    return StyleModuleCompiler(paths, bundler), paths


def test_extract_class_mapping_pretty_and_minified():
    pretty = 'var card_default = {\n  title: "card_title",\n  "with-dash": "card_dash"\n};\nexport { card_default as styles };'
    assert extract_class_mapping(pretty) == {"title": "card_title", "with-dash": "card_dash"}

    minified = 'var a={title:"x_title",body:"x_body"};export{a as styles};'
    assert extract_class_mapping(minified) == {"title": "x_title", "body": "x_body"}


def test_extract_class_mapping_unparseable():
    assert extract_class_mapping("export const styles = 1;") is None
    assert extract_class_mapping("var a = {title: x_title};") is None


def test_compile_writes_mapping_artifact_and_css(project, bundler):
    compiler, paths = _compiler(project, bundler)
    result = compiler.compile()

    assert result.mappings == {
        "components/card.module.css": {"title": "card_title", "body": "card_body"}
    }
    assert ".card_title" in result.css
    assert result.css.endswith("\n")
    assert load_class_mappings(paths.style_cache_path) == result.mappings
    # wrappers are removed after each file
    assert not list(paths.cache_dir.glob("css-extract-*.js"))


def test_compile_is_deterministic(project, bundler):
    compiler, paths = _compiler(project, bundler)
    first = compiler.compile()
    second = compiler.compile()
    assert first.css == second.css
    assert first.mappings == second.mappings


def test_compile_overwrites_previous_artifact(project, bundler):
    compiler, paths = _compiler(project, bundler)
    paths.cache_dir.mkdir(parents=True, exist_ok=True)
    paths.style_cache_path.write_text(json.dumps({"gone.module.css": {"a": "b"}}))
    compiler.compile()
    assert "gone.module.css" not in load_class_mappings(paths.style_cache_path)


def test_unparseable_module_is_skipped(project, capsys):
    write(project / "src" / "components" / "broken.module.css", ".x { color: blue; }")
    bundler = FakeBundler(failing={"css-extract-components_broken_module_css"})
    compiler, paths = _compiler(project, bundler)
    result = compiler.compile()

    assert "components/broken.module.css" not in result.mappings
    assert "components/card.module.css" in result.mappings
    assert [p.name for p in result.skipped] == ["broken.module.css"]
    assert "broken.module.css" in capsys.readouterr().out


def test_minified_output_still_maps(project):
    compiler, paths = _compiler(project, FakeBundler(minified_mappings=True))
    compiler.compile(minify=True)
    assert get_class_name(paths.style_cache_path, "components/card.module.css", "title") == "card_title"


def test_get_class_name_unknown_values(project, bundler):
    compiler, paths = _compiler(project, bundler)
    assert get_class_name(paths.style_cache_path, "components/card.module.css", "title") == ""
    compiler.compile()
    assert get_class_name(paths.style_cache_path, "components/card.module.css", "subtitle") == ""
    assert get_class_name(paths.style_cache_path, "missing.module.css", "title") == ""


def test_stylesheet_puts_global_css_first(project, bundler):
    compiler, _ = _compiler(project, bundler)
    css = compiler.stylesheet()
    assert css.startswith("body { margin: 0; }\n")
    assert css.index("body") < css.index(".card_title")
