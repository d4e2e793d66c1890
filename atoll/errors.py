"""Error types shared across Atoll.

The taxonomy follows how failures are handled:

- ConfigError: fatal configuration problems. Aborts the command.
- BuildError: a source file could not be processed. Carries the file path
  so the CLI can point at it.
- ContentError: a content document has invalid front-matter.

Per-unit failures (a style module that cannot be mapped, an island that
fails to bundle) are reported and skipped rather than raised.
"""

from __future__ import annotations

from pathlib import Path


class ConfigError(Exception):
    """Fatal configuration error, e.g. an undeclared runtime dependency."""


class BuildError(Exception):
    """Error during site build with file context.

    Attributes:
        source_path: Path to the source file that caused the error.
        message: Human-readable error message.
        original_error: The original exception that was caught.
    """

    def __init__(
        self,
        source_path: Path,
        message: str,
        original_error: Exception | None = None,
    ):
        self.source_path = source_path
        self.message = message
        self.original_error = original_error
        super().__init__(f"{source_path}: {message}")


class ContentError(BuildError):
    """A content document is missing required front-matter or has bad values."""
