import json
import re
from pathlib import Path

import pytest

from atoll.bundler import BundleResult, collect_outputs

_IMPORT_RE = re.compile(r'import styles from ("[^"]+");')
_CLASS_RE = re.compile(r"\.([A-Za-z_][\w-]*)")


class FakeBundler:
    """Stands in for esbuild.

    Style wrappers compile to a pretty-printed ``var x = {...};`` mapping
    (``<stem>_<class>``) plus the CSS with renamed classes. Island wrappers
    compile to a script echoing the wrapper, plus CSS for islands listed in
    ``styled``.
    """

    def __init__(self, styled=(), failing=(), minified_mappings=False):
        self.styled = set(styled)
        self.failing = set(failing)
        self.minified_mappings = minified_mappings
        self.calls = []

    def build(
        self,
        entrypoint,
        outdir,
        entry_name=None,
        minify=False,
        externals=(),
        define=None,
    ):
        stem = entry_name or Path(entrypoint).stem
        self.calls.append(
            {
                "entrypoint": Path(entrypoint),
                "outdir": Path(outdir),
                "entry_name": stem,
                "minify": minify,
                "externals": list(externals),
                "define": dict(define or {}),
            }
        )
        if stem in self.failing:
            return BundleResult(success=False, logs=f"✘ [ERROR] could not build {stem}")
        outdir = Path(outdir)
        outdir.mkdir(parents=True, exist_ok=True)
        source = Path(entrypoint).read_text(encoding="utf-8")
        match = _IMPORT_RE.search(source)
        if match:
            self._compile_style(Path(json.loads(match.group(1))), outdir, stem)
        else:
            (outdir / f"{stem}.js").write_text(f"/* {stem} */\n{source}", encoding="utf-8")
            if stem in self.styled:
                (outdir / f"{stem}.css").write_text(f".{stem}{{color:red}}", encoding="utf-8")
        return BundleResult(success=True, outputs=collect_outputs(outdir, stem))

    def _compile_style(self, css_path, outdir, stem):
        css = css_path.read_text(encoding="utf-8")
        prefix = css_path.name.split(".")[0]
        names = []
        for name in _CLASS_RE.findall(css):
            if name not in names:
                names.append(name)
        mapping = {name: f"{prefix}_{name}" for name in names}
        if self.minified_mappings:
            body = ",".join(f'{key}:"{value}"' for key, value in mapping.items())
            script = f"var a={{{body}}};export{{a as styles}};"
        else:
            body = ",\n".join(f'  {key}: "{value}"' for key, value in mapping.items())
            script = f"var {prefix}_default = {{\n{body}\n}};\nexport {{\n  {prefix}_default as styles\n}};\n"
        renamed = _CLASS_RE.sub(lambda m: "." + mapping[m.group(1)], css)
        (outdir / f"{stem}.js").write_text(script, encoding="utf-8")
        (outdir / f"{stem}.css").write_text(renamed, encoding="utf-8")


@pytest.fixture
def bundler():
    return FakeBundler()


def write(path: Path, text: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


BASE_LAYOUT = """<!doctype html>
<html><head><title>{% block title %}{{ site.name }}{% endblock %}</title></head>
<body>{% block content %}{% endblock %}</body></html>
"""


@pytest.fixture
def project(tmp_path):
    """A small project: two pages, a document template, two documents, one island."""
    root = tmp_path / "site"
    write(
        root / "atoll.yaml",
        "site:\n"
        "  name: Test Site\n"
        "  url: https://example.com\n"
        "  description: A test site\n"
        "islands:\n"
        "  counter: components/counter.jsx\n"
        "  chart: [components/chart.jsx, Chart]\n",
    )
    write(
        root / "package.json",
        json.dumps(
            {
                "dependencies": {
                    "react": "^18.3.1",
                    "react-dom": "^18.3.1",
                    "d3-scale": "~4.0.2",
                }
            }
        ),
    )
    write(root / "public" / "robots.txt", "User-agent: *\n")
    src = root / "src"
    write(src / "layouts" / "base.html.jinja", BASE_LAYOUT)
    write(
        src / "pages" / "index.html.jinja",
        '{% extends "layouts/base.html.jinja" %}{% block content %}'
        "<h1 class=\"{{ class_name('components/card.module.css', 'title') }}\">Home</h1>"
        "{{ Counter() }}"
        "{% for post in posts %}<a href=\"{{ url('/' ~ post.slug) }}\">{{ post.title }}</a>{% endfor %}"
        "{% endblock %}",
    )
    write(
        src / "pages" / "about.html.jinja",
        '{% extends "layouts/base.html.jinja" %}{% block content %}<p>About</p>{% endblock %}',
    )
    write(
        src / "pages" / "404.html.jinja",
        '{% extends "layouts/base.html.jinja" %}{% block content %}<p>Missing</p>{% endblock %}',
    )
    write(
        src / "pages" / "post.html.jinja",
        '{% extends "layouts/base.html.jinja" %}{% block title %}{{ post.title }}{% endblock %}'
        "{% block content %}{% if cover %}{{ cover }}{% endif %}<article>{{ content }}</article>{% endblock %}",
    )
    write(src / "styles" / "global.css", "body { margin: 0; }")
    write(src / "components" / "card.module.css", ".title { color: red; }\n.body { margin: 0; }\n")
    write(
        src / "components" / "counter.jsx",
        'import { useState } from "react";\nexport default function Counter() { return null; }\n',
    )
    write(
        src / "components" / "chart.jsx",
        'import { scaleLinear } from "d3-scale";\nimport { helper } from "./helper.js";\n'
        "export function Chart() { return null; }\n",
    )
    write(src / "components" / "helper.js", 'import "left-pad";\nexport const helper = 1;\n')
    write(
        src / "posts" / "hello" / "index.md",
        "---\ntitle: Hello\nsubtitle: First words\npublishedAt: 2024-06-01\ncover: cover.svg\n---\n\n"
        '# Hello\n\nSee [about](/about).\n\n<div data-island="chart"></div>\n',
    )
    write(src / "posts" / "hello" / "cover.svg", "<svg></svg>")
    write(src / "posts" / "hello" / "photo.png", "png")
    write(
        src / "posts" / "older.md",
        "---\ntitle: Older\ndescription: Older post\npublishedAt: 2024-01-01\n---\n\nOld text.\n",
    )
    return root
