"""Protocol definitions for Atoll.

The pipeline depends on these small interfaces rather than on esbuild, real
timers or a real HTTP client, so each collaborator can be replaced in tests.
"""

from __future__ import annotations

from abc import abstractmethod
from collections.abc import Callable, Iterable, Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .bundler import BundleResult


@runtime_checkable
class Bundler(Protocol):
    """Compiles an entry module into browser-ready JavaScript and CSS."""

    @abstractmethod
    def build(
        self,
        entrypoint: Path,
        outdir: Path,
        entry_name: str | None = None,
        minify: bool = False,
        externals: Iterable[str] = (),
        define: Mapping[str, str] | None = None,
    ) -> BundleResult:
        """Bundle ``entrypoint`` into ``outdir`` and report what was emitted."""
        ...


@runtime_checkable
class Timer(Protocol):
    """A cancellable one-shot timer, shaped like ``threading.Timer``."""

    daemon: bool

    @abstractmethod
    def start(self) -> None: ...

    @abstractmethod
    def cancel(self) -> None: ...


TimerFactory = Callable[[float, Callable[[], None]], Timer]
