"""esbuild driver for Atoll.

Both the style module compiler and the island bundler compile through the
``esbuild`` CLI. This module locates the executable, builds the command line
and collects the emitted files into a ``BundleResult``.

Key objects:
- find_executable: Locate an executable in PATH or local node_modules.
- BundleOutput / BundleResult: What a single bundler invocation produced.
- EsbuildBundler: Runs esbuild as a subprocess.
"""

from __future__ import annotations

import shutil
import subprocess
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

ESBUILD = "esbuild"

_OUTPUT_KINDS = {".js": "js", ".mjs": "js", ".css": "css"}


def find_executable(name: str, project_root: Path | None = None) -> str | None:
    """Find an executable in PATH or local node_modules.

    Searches for an executable first in the system PATH, then in the
    project's local node_modules/.bin directory if a project root is provided.

    Args:
        name: Name of the executable to find (e.g., 'esbuild').
        project_root: Optional project root directory to search for
            local node_modules installations.

    Returns:
        Full path to the executable if found, None otherwise.
    """
    found = shutil.which(name)
    if found:
        return found
    if project_root is not None:
        local = project_root / "node_modules" / ".bin" / name
        if local.exists():
            return str(local)
    return None


@dataclass
class BundleOutput:
    """One file emitted by the bundler.

    Attributes:
        path: Location of the emitted file.
        kind: "js" or "css".
        text: File contents.
    """

    path: Path
    kind: str
    text: str


@dataclass
class BundleResult:
    """Outcome of a bundler invocation.

    Attributes:
        success: Whether the bundler exited cleanly.
        outputs: Files emitted, JavaScript and CSS.
        logs: Diagnostic output from the bundler.
    """

    success: bool
    outputs: list[BundleOutput] = field(default_factory=list)
    logs: str = ""

    def output(self, kind: str) -> BundleOutput | None:
        """Return the first output of the given kind, if any."""
        for item in self.outputs:
            if item.kind == kind:
                return item
        return None


class EsbuildBundler:
    """Bundles browser modules with the esbuild CLI.

    Attributes:
        project_root: Root of the project; esbuild runs from here so that
            bare imports resolve against the project's node_modules.
        executable: Path to esbuild, or None to look it up lazily.
    """

    def __init__(self, project_root: Path, executable: str | None = None):
        self.project_root = project_root
        self.executable = executable

    def _resolve_executable(self) -> str | None:
        if self.executable is None:
            self.executable = find_executable(ESBUILD, self.project_root)
        return self.executable

    def command(
        self,
        executable: str,
        entrypoint: Path,
        outdir: Path,
        entry_name: str | None = None,
        minify: bool = False,
        externals: Iterable[str] = (),
        define: Mapping[str, str] | None = None,
    ) -> list[str]:
        """Build the esbuild argument list."""
        cmd = [
            executable,
            str(entrypoint),
            "--bundle",
            "--format=esm",
            "--platform=browser",
            "--jsx=automatic",
            "--log-level=warning",
            f"--outdir={outdir}",
        ]
        if entry_name:
            cmd.append(f"--entry-names={entry_name}")
        if minify:
            cmd.append("--minify")
        for key, value in (define or {}).items():
            cmd.append(f"--define:{key}={value}")
        for name in externals:
            cmd.append(f"--external:{name}")
        return cmd

    def build(
        self,
        entrypoint: Path,
        outdir: Path,
        entry_name: str | None = None,
        minify: bool = False,
        externals: Iterable[str] = (),
        define: Mapping[str, str] | None = None,
    ) -> BundleResult:
        """Bundle ``entrypoint`` into ``outdir``.

        Args:
            entrypoint: Module to bundle.
            outdir: Directory receiving the emitted files.
            entry_name: Output file stem; defaults to the entrypoint stem.
            minify: Minify JavaScript and CSS.
            externals: Module specifiers left as bare imports.
            define: Compile-time constant replacements.

        Returns:
            BundleResult with the emitted outputs. A missing esbuild binary
            produces an unsuccessful result rather than an exception.
        """
        executable = self._resolve_executable()
        if not executable:
            return BundleResult(
                success=False,
                logs=(
                    "esbuild not found. Install with `npm install -D esbuild` "
                    "in the project or `npm install -g esbuild`."
                ),
            )
        outdir.mkdir(parents=True, exist_ok=True)
        cmd = self.command(
            executable,
            entrypoint,
            outdir,
            entry_name=entry_name,
            minify=minify,
            externals=externals,
            define=define,
        )
        result = subprocess.run(
            cmd, capture_output=True, text=True, cwd=self.project_root
        )
        logs = "\n".join(
            part for part in (result.stdout.strip(), result.stderr.strip()) if part
        )
        if result.returncode != 0:
            return BundleResult(success=False, logs=logs)
        stem = entry_name or entrypoint.stem
        return BundleResult(
            success=True, outputs=collect_outputs(outdir, stem), logs=logs
        )


def collect_outputs(outdir: Path, stem: str) -> list[BundleOutput]:
    """Read the files named ``stem.*`` that the bundler wrote to ``outdir``."""
    outputs: list[BundleOutput] = []
    for path in sorted(outdir.glob(f"{stem}.*")):
        kind = _OUTPUT_KINDS.get(path.suffix)
        if kind is None:
            continue
        outputs.append(
            BundleOutput(path=path, kind=kind, text=path.read_text(encoding="utf-8"))
        )
    return outputs
