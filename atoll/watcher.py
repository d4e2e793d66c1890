"""File watching and server supervision for ``atoll dev``.

The supervisor owns the dev server process. File changes are classified,
coalesced over a short window, and then turned into one decision per
window:

- structural change (Python code, ``atoll.yaml``, ``package.json``): restart
  the server, wait for its health probe, then ask it to reload browsers;
- content or style change: ask the running server to reload browsers
  (the reload endpoint recompiles styles first);
- anything else: nothing.

The supervisor talks to the server only over HTTP on the loopback interface.

Key classes:
- Debouncer: Coalesces bursts of change events.
- Supervisor: Server process state machine.
- DevWatcher: Connects a watchdog observer to the debouncer and supervisor.
"""

from __future__ import annotations

import subprocess
import sys
import threading
import time
from collections.abc import Callable, Iterable
from enum import Enum
from pathlib import Path
from typing import Any

import requests
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .config import CONFIG_FILENAME, MANIFEST_FILENAME, ProjectPaths, load_config, resolve_ports
from .protocols import TimerFactory
from .server import HEALTH_PATH, RELOAD_PATH

DEBOUNCE_SECONDS = 0.15
HEALTH_ATTEMPTS = 50
HEALTH_INTERVAL = 0.1

_STRUCTURAL_NAMES = {CONFIG_FILENAME, MANIFEST_FILENAME}
_STRUCTURAL_SUFFIXES = {".py"}
_EDITOR_TEMP_SUFFIXES = ("~", ".swp", ".swx", ".tmp")
_IGNORED_PARTS = {"node_modules", "__pycache__"}


class ChangeKind(Enum):
    """How a changed file affects the running server, weakest first."""

    IGNORED = 0
    CONTENT = 1
    ASSET = 2
    STRUCTURAL = 3


def classify_change(path: Path, paths: ProjectPaths | None = None) -> ChangeKind:
    """Classify a changed file.

    Args:
        path: Changed file.
        paths: Project directories; files under the cache and output
            directories are ignored when given.

    Examples:
        >>> classify_change(Path("src/components/card.module.css")).name
        'ASSET'

        >>> classify_change(Path("atoll.yaml")).name
        'STRUCTURAL'
    """
    name = path.name
    if (
        not name
        or name.startswith((".", "#"))
        or name.endswith(_EDITOR_TEMP_SUFFIXES)
        or _IGNORED_PARTS.intersection(path.parts)
    ):
        return ChangeKind.IGNORED
    if paths is not None:
        for ignored in (paths.cache_dir, paths.output_dir):
            try:
                path.relative_to(ignored)
                return ChangeKind.IGNORED
            except ValueError:
                pass
    if name in _STRUCTURAL_NAMES or path.suffix in _STRUCTURAL_SUFFIXES:
        return ChangeKind.STRUCTURAL
    if name.endswith(".module.css"):
        return ChangeKind.ASSET
    return ChangeKind.CONTENT


def strongest_change(kinds: Iterable[ChangeKind]) -> ChangeKind:
    return max(kinds, key=lambda kind: kind.value, default=ChangeKind.IGNORED)


class Debouncer:
    """Coalesces pushed paths into one callback per quiet window.

    Every push restarts the timer. When the timer fires, the callback gets
    the union of every path pushed since the last callback.

    Attributes:
        window: Quiet period in seconds.
        callback: Receives the set of changed paths.
    """

    def __init__(
        self,
        window: float,
        callback: Callable[[set[Path]], None],
        timer_factory: TimerFactory = threading.Timer,
    ):
        self.window = window
        self.callback = callback
        self.timer_factory = timer_factory
        self._pending: set[Path] = set()
        self._timer = None
        self._lock = threading.Lock()

    def push(self, path: Path) -> None:
        with self._lock:
            self._pending.add(path)
            if self._timer is not None:
                self._timer.cancel()
            self._timer = self.timer_factory(self.window, self._fire)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self) -> None:
        with self._lock:
            paths = self._pending
            self._pending = set()
            self._timer = None
        if paths:
            self.callback(paths)

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = None
            self._pending = set()


class SupervisorState(Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    RESTARTING = "restarting"


class Supervisor:
    """Runs ``atoll serve`` as a child process and restarts it on demand.

    Transitions: STOPPED -> STARTING -> RUNNING <-> RESTARTING -> STOPPED.
    A restart requested while one is in flight is ignored.

    Attributes:
        project_root: Project directory; the child's working directory.
        http_port: Port the child serves HTTP on.
        ws_port: Port the child serves live reload on.
        state: Current state.
    """

    def __init__(
        self,
        project_root: Path,
        http_port: int,
        ws_port: int,
        popen: Callable[..., Any] = subprocess.Popen,
        session: requests.Session | None = None,
        sleep: Callable[[float], None] = time.sleep,
        health_attempts: int = HEALTH_ATTEMPTS,
        health_interval: float = HEALTH_INTERVAL,
    ):
        self.project_root = project_root
        self.http_port = http_port
        self.ws_port = ws_port
        self.popen = popen
        self.session = session or requests.Session()
        self.sleep = sleep
        self.health_attempts = health_attempts
        self.health_interval = health_interval
        self.state = SupervisorState.STOPPED
        self.process: Any = None
        self._restart_in_flight = False
        self._lock = threading.Lock()

    @property
    def base_url(self) -> str:
        return f"http://127.0.0.1:{self.http_port}"

    def command(self) -> list[str]:
        return [
            sys.executable,
            "-m",
            "atoll",
            "serve",
            "--port",
            str(self.http_port),
            "--ws-port",
            str(self.ws_port),
        ]

    def start(self) -> bool:
        """Spawn the server and wait for it to report healthy.

        Returns:
            True if the health probe succeeded.
        """
        self.state = SupervisorState.STARTING
        self._spawn()
        healthy = self.wait_until_healthy()
        self.state = SupervisorState.RUNNING
        if not healthy:
            print("Warning: dev server did not become healthy; continuing degraded")
        return healthy

    def _spawn(self) -> None:
        self.process = self.popen(self.command(), cwd=str(self.project_root))

    def _terminate(self) -> None:
        process = self.process
        self.process = None
        if process is None or process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()

    def stop(self) -> None:
        self._terminate()
        self.state = SupervisorState.STOPPED

    def wait_until_healthy(self) -> bool:
        """Poll the health probe a bounded number of times."""
        url = self.base_url + HEALTH_PATH
        for _ in range(self.health_attempts):
            try:
                response = self.session.get(url, timeout=1)
                if response.ok:
                    return True
            except requests.RequestException:
                pass
            self.sleep(self.health_interval)
        return False

    def trigger_reload(self) -> bool:
        """Ask the server to recompile styles and reload browsers."""
        try:
            response = self.session.post(self.base_url + RELOAD_PATH, timeout=10)
            response.raise_for_status()
        except requests.RequestException as exc:
            print(f"Warning: reload request failed: {exc}")
            return False
        return True

    def restart(self) -> bool:
        """Restart the server, then trigger a reload.

        The reload is sent after the health probe succeeds, or after polling
        is exhausted (logged as degraded).

        Returns:
            False if another restart was already in flight.
        """
        with self._lock:
            if self._restart_in_flight:
                print("Restart already in progress; skipping")
                return False
            self._restart_in_flight = True
        try:
            print("Structural change detected; restarting dev server...")
            self.state = SupervisorState.RESTARTING
            self._terminate()
            self._spawn()
            if not self.wait_until_healthy():
                print("Warning: dev server did not become healthy; reloading anyway")
            self.state = SupervisorState.RUNNING
            self.trigger_reload()
        finally:
            with self._lock:
                self._restart_in_flight = False
        return True

    def handle_changes(self, kinds: Iterable[ChangeKind]) -> ChangeKind:
        """Make one decision for a batch of changes.

        Returns:
            The strongest change kind in the batch.
        """
        kind = strongest_change(kinds)
        if kind is ChangeKind.STRUCTURAL:
            self.restart()
        elif kind in (ChangeKind.CONTENT, ChangeKind.ASSET):
            self.trigger_reload()
        return kind


class _ChangeHandler(FileSystemEventHandler):
    def __init__(self, debouncer: Debouncer):
        super().__init__()
        self.debouncer = debouncer

    def on_any_event(self, event):
        if event.is_directory or event.event_type in ("opened", "closed_no_write"):
            return
        self.debouncer.push(Path(event.src_path))
        dest = getattr(event, "dest_path", "")
        if dest:
            self.debouncer.push(Path(dest))


class DevWatcher:
    """Watches a project and drives a Supervisor.

    Attributes:
        paths: Project directories.
        supervisor: Server process supervisor.
        debouncer: Change coalescer.
    """

    def __init__(
        self,
        paths: ProjectPaths,
        supervisor: Supervisor,
        window: float = DEBOUNCE_SECONDS,
        timer_factory: TimerFactory = threading.Timer,
    ):
        self.paths = paths
        self.supervisor = supervisor
        self.debouncer = Debouncer(window, self.on_changes, timer_factory)
        self._observer: Observer | None = None

    def on_changes(self, changed: set[Path]) -> ChangeKind:
        kinds = [classify_change(path, self.paths) for path in changed]
        return self.supervisor.handle_changes(kinds)

    def start(self) -> None:  # pragma: no cover - integration path
        handler = _ChangeHandler(self.debouncer)
        observer = Observer()
        if self.paths.src_dir.exists():
            observer.schedule(handler, str(self.paths.src_dir), recursive=True)
        if self.paths.public_dir.exists():
            observer.schedule(handler, str(self.paths.public_dir), recursive=True)
        # Config, manifest and any local Python modules
        observer.schedule(handler, str(self.paths.root), recursive=False)
        observer.start()
        self._observer = observer

    def stop(self) -> None:
        self.debouncer.cancel()
        if self._observer:
            self._observer.stop()
            self._observer.join()
            self._observer = None


def run_dev(
    project_root: Path,
    http_port: int | None = None,
    ws_port: int | None = None,
) -> None:  # pragma: no cover - integration path
    """Run the supervisor and watcher until interrupted."""
    config = load_config(project_root)
    http, ws = resolve_ports(config, http_port, ws_port)
    paths = ProjectPaths.from_config(project_root, config)
    supervisor = Supervisor(project_root, http, ws)
    watcher = DevWatcher(paths, supervisor)
    supervisor.start()
    watcher.start()
    print(f"Watching {paths.src_dir} for changes")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        watcher.stop()
        supervisor.stop()
