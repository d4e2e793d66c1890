"""Command-line interface for Atoll.

Commands:
- new: Scaffold a new Atoll project.
- build: Build the static site into the output directory.
- serve: Run the dev server process (no file watching).
- dev: Run the dev server under the file-watching supervisor.
"""

from __future__ import annotations

import json
import os
import shutil
import subprocess
from pathlib import Path

import click

from . import __version__
from .errors import BuildError, ConfigError

# Path to the default template directory
_TEMPLATES_DIR = Path(__file__).parent / "templates" / "default"

_PACKAGE_DEPENDENCIES = {
    "react": "^18.3.1",
    "react-dom": "^18.3.1",
}
_PACKAGE_DEV_DEPENDENCIES = {
    "esbuild": "^0.23.0",
}


@click.group()
@click.version_option(version=__version__, prog_name="atoll")
def cli():
    """Atoll static site generator with interactive islands."""


@cli.command()
@click.argument("name")
def new(name: str):
    """Scaffold a new Atoll project."""
    target = Path(name).resolve()
    if target.exists() and any(target.iterdir()):
        raise click.ClickException(
            f"Refusing to initialize into non-empty directory: {target}"
        )
    _scaffold(target)
    click.echo(f"New Atoll site created at {target}")


def _report_build_error(exc: BuildError, project_root: Path) -> None:
    try:
        rel_path = exc.source_path.resolve().relative_to(project_root.resolve())
    except ValueError:
        rel_path = exc.source_path
    click.echo(click.style("Build failed:", fg="red", bold=True), err=True)
    click.echo(click.style(f"  File: {rel_path}", fg="yellow"), err=True)
    click.echo(click.style(f"  Error: {exc.message}", fg="white"), err=True)


@cli.command()
@click.option(
    "--out",
    "output_dir",
    type=click.Path(file_okay=False, path_type=Path),
    required=False,
    help="Write the site here instead of the configured output_dir",
)
def build(output_dir: Path | None):
    """Build the site into the output directory."""
    project_root = Path.cwd()
    from .build import build_site

    try:
        result = build_site(project_root, output_dir_override=output_dir)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    except BuildError as exc:
        _report_build_error(exc, project_root)
        raise SystemExit(1) from None
    summary = (
        f"Built {len(result.pages)} pages and {len(result.posts)} documents "
        f"into {result.output_dir}"
    )
    click.echo(summary)
    if result.islands.failed:
        failed = ", ".join(result.islands.failed)
        click.echo(click.style(f"Islands failed to bundle: {failed}", fg="yellow"), err=True)


_port_option = click.option(
    "--port",
    type=int,
    required=False,
    help="Port to run the dev server (overrides atoll.yaml)",
)
_ws_port_option = click.option(
    "--ws-port",
    type=int,
    required=False,
    help="Port for the live reload websocket server (overrides atoll.yaml ws_port)",
)


@cli.command()
@_port_option
@_ws_port_option
def serve(port: int | None, ws_port: int | None):
    """Run the dev server without watching files."""
    project_root = Path.cwd()
    from .server import DevServer

    try:
        server = DevServer(project_root, http_port=port, ws_port=ws_port)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc
    server.start()


@cli.command()
@_port_option
@_ws_port_option
def dev(port: int | None, ws_port: int | None):
    """Run the dev server and restart or reload it when files change."""
    project_root = Path.cwd()
    from .watcher import run_dev

    try:
        run_dev(project_root, http_port=port, ws_port=ws_port)
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def main():
    """Entry point for the CLI application."""
    cli()


def _scaffold(root: Path) -> None:
    """Create the directory structure and files for a new Atoll project.

    Args:
        root: Root directory for the new project.
    """
    for src_path in _TEMPLATES_DIR.rglob("*"):
        if src_path.is_dir() or "__pycache__" in src_path.parts:
            continue
        rel_path = src_path.relative_to(_TEMPLATES_DIR)
        dest_path = root / rel_path
        dest_path.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(src_path, dest_path)

    # Generate package.json with project name
    package_json = {
        "name": root.name,
        "private": True,
        "type": "module",
        "dependencies": dict(_PACKAGE_DEPENDENCIES),
        "devDependencies": dict(_PACKAGE_DEV_DEPENDENCIES),
    }
    (root / "package.json").write_text(
        json.dumps(package_json, indent=2) + "\n", encoding="utf-8"
    )

    _try_npm_install(root)


def _try_npm_install(root: Path) -> None:
    """Attempt to install Node dependencies if npm is available."""
    if os.environ.get("ATOLL_SKIP_NPM_INSTALL") == "1":
        return
    npm_bin = shutil.which("npm")
    if not npm_bin:
        click.echo("npm not found; run `npm install` before building.")
        return
    try:
        subprocess.run(
            [npm_bin, "install"],
            cwd=root,
            check=True,
            capture_output=True,
        )
    except (OSError, subprocess.CalledProcessError) as exc:
        click.echo(f"npm install failed ({exc}); run it manually.", err=True)
