#!/usr/bin/env python3
"""
mjml_build.py - MJML build helper with watch mode and preview server

Compiles every .mjml file under src/ into a matching .html file under dist/,
mirroring the directory structure. With --watch, serves dist/ over HTTP and
recompiles (or removes) outputs as sources are added, changed or deleted.

Usage:
    python mjml_build.py [--watch]
"""

import argparse
import io
import ipaddress
import logging
import os
import socket
import socketserver
import sys
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from http.server import SimpleHTTPRequestHandler
from pathlib import Path
from typing import Any, Callable, NamedTuple, Optional

import psutil
from mjml import mjml_to_html
from rich.logging import RichHandler
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer


# --- Configuration ---
SOURCE_DIRNAME = "src"
DIST_DIRNAME = "dist"
MJML_EXTENSION = ".mjml"
OUTPUT_EXTENSION = ".html"
DEFAULT_PORT = 3000
STABILITY_THRESHOLD = 0.2  # Quiet period before a written file counts as finished
POLL_INTERVAL = 0.05

LOG = logging.getLogger("mjml_build")


class SourceDirError(Exception):
    """Raised when the source directory is missing or unusable."""


# --- Compiler ---
@dataclass
class Diagnostic:
    """A single issue reported by a compiler.

    The mjml library reports plain strings; ``formatted_message`` is for
    compilers that also report a located, formatted form.
    """

    message: str
    formatted_message: Optional[str] = None

    def render(self) -> str:
        return self.formatted_message or self.message


@dataclass
class CompileResult:
    html: str
    errors: list[Diagnostic] = field(default_factory=list)


Compiler = Callable[[str, Path], CompileResult]


def compile_mjml(text: str, file_path: Path) -> CompileResult:
    """Render MJML markup to HTML, resolving mj-include relative to the source."""
    result = mjml_to_html(io.StringIO(text), template_dir=file_path.parent)
    return CompileResult(
        html=result.html,
        errors=[Diagnostic(message=error) for error in result.errors],
    )


@dataclass(frozen=True)
class BuildConfig:
    """Where to read sources, where to write outputs, and how to do it."""

    source_dir: Path
    dist_dir: Path
    source_extension: str = MJML_EXTENSION
    output_extension: str = OUTPUT_EXTENSION
    port: int = DEFAULT_PORT
    max_workers: Optional[int] = None
    stability_threshold: float = STABILITY_THRESHOLD
    poll_interval: float = POLL_INTERVAL
    compiler: Compiler = compile_mjml

    @classmethod
    def from_cwd(cls, cwd: Optional[Path] = None, **overrides: Any) -> "BuildConfig":
        base = (cwd or Path.cwd()).resolve()
        return cls(
            source_dir=base / SOURCE_DIRNAME,
            dist_dir=base / DIST_DIRNAME,
            **overrides,
        )

    @property
    def watch_pattern(self) -> str:
        return f"{self.source_dir.name}/**/*{self.source_extension}"


# --- File utilities ---
class OutputPaths(NamedTuple):
    destination_dir: Path
    output_file: Path


def display_path(path: Path) -> str:
    """Path relative to the working directory, for log lines."""
    try:
        return os.path.relpath(path, Path.cwd())
    except ValueError:
        return str(path)


def is_source_file(config: BuildConfig, path: Path | str) -> bool:
    return str(path).endswith(config.source_extension)


def resolve_output_paths(config: BuildConfig, file_path: Path) -> OutputPaths:
    """Map a source file to its output directory and file under dist."""
    rel_path = Path(file_path).relative_to(config.source_dir)
    destination_dir = config.dist_dir / rel_path.parent
    output_file = destination_dir / f"{rel_path.stem}{config.output_extension}"
    return OutputPaths(destination_dir, output_file)


def collect_source_files(
    config: BuildConfig, directory: Optional[Path] = None
) -> list[Path]:
    """Return every source file at or below ``directory`` (default: source root).

    A directory that does not exist contributes nothing. Any other error while
    listing a directory is raised.
    """
    pending = [Path(directory) if directory is not None else config.source_dir]
    found: list[Path] = []

    while pending:
        current = pending.pop()
        try:
            with os.scandir(current) as it:
                entries = list(it)
        except FileNotFoundError:
            continue

        for entry in entries:
            if entry.is_dir(follow_symlinks=False):
                pending.append(Path(entry.path))
            elif entry.is_file(follow_symlinks=False) and is_source_file(
                config, entry.name
            ):
                found.append(Path(entry.path))

    return sorted(found)


def wait_for_write_finish(
    path: Path,
    stability_threshold: float = STABILITY_THRESHOLD,
    poll_interval: float = POLL_INTERVAL,
) -> bool:
    """Block until ``path`` stops changing. Returns False if it disappears."""

    def signature() -> Optional[tuple[int, int]]:
        try:
            st = path.stat()
        except FileNotFoundError:
            return None
        return st.st_size, st.st_mtime_ns

    last = signature()
    if last is None:
        return False
    stable_since = time.monotonic()

    while time.monotonic() - stable_since < stability_threshold:
        time.sleep(poll_interval)
        current = signature()
        if current is None:
            return False
        if current != last:
            last = current
            stable_since = time.monotonic()

    return True


# --- Build ---
def compile_file(config: BuildConfig, file_path: Path) -> bool:
    """Compile one source file into dist. Failures are logged, not raised."""
    file_path = Path(file_path)
    try:
        text = file_path.read_text(encoding="utf-8")
        result = config.compiler(text, file_path)

        if result.errors:
            LOG.warning(
                "%d issue(s) while compiling %s", len(result.errors), file_path
            )
            for issue in result.errors:
                LOG.warning("- %s", issue.render())

        destination_dir, output_file = resolve_output_paths(config, file_path)
        destination_dir.mkdir(parents=True, exist_ok=True)
        output_file.write_text(result.html, encoding="utf-8")
        LOG.info("%s -> %s", display_path(file_path), display_path(output_file))
        return True
    except Exception as e:
        LOG.error("Failed to compile %s: %s", file_path, e)
        return False


def remove_compiled_file(config: BuildConfig, file_path: Path) -> bool:
    """Delete the output that belongs to a removed source file."""
    _, output_file = resolve_output_paths(config, Path(file_path))
    try:
        output_file.unlink()
    except FileNotFoundError:
        LOG.debug("Nothing to remove for %s", file_path)
        return False
    except OSError as e:
        LOG.error("Failed to remove %s: %s", output_file, e)
        return False
    LOG.info("removed %s", display_path(output_file))
    return True


def build_all(config: BuildConfig) -> int:
    """Compile every source file. Returns the number compiled successfully."""
    config.dist_dir.mkdir(parents=True, exist_ok=True)
    files = collect_source_files(config)
    if not files:
        LOG.warning("No MJML files found under %s", config.source_dir.name)
        return 0

    with ThreadPoolExecutor(max_workers=config.max_workers) as pool:
        results = list(pool.map(lambda path: compile_file(config, path), files))
    return sum(results)


def ensure_source_dir_exists(config: BuildConfig) -> None:
    name = config.source_dir.name
    if not config.source_dir.exists():
        raise SourceDirError(
            f"Missing {name} directory. Create it before running the MJML build script."
        )
    if not config.source_dir.is_dir():
        raise SourceDirError(f"{name} exists but is not a directory")


# --- HTTP Server ---
class QuietHTTPHandler(SimpleHTTPRequestHandler):
    """Static file handler that sends request lines to the debug log."""

    def log_message(self, format: str, *args: object) -> None:
        LOG.debug("%s - %s", self.address_string(), format % args)


class _PreviewTCPServer(socketserver.ThreadingTCPServer):
    allow_reuse_address = True
    daemon_threads = True


def get_local_ip_address() -> str:
    """First non-loopback IPv4 address on any network interface, or 'localhost'."""
    for addresses in psutil.net_if_addrs().values():
        for addr in addresses:
            if addr.family != socket.AF_INET:
                continue
            if not ipaddress.ip_address(addr.address).is_loopback:
                return addr.address
    return "localhost"


class PreviewServer:
    """Static HTTP server for the output directory, running in a background thread."""

    def __init__(self, directory: Path, port: int = DEFAULT_PORT, host: str = ""):
        self.directory = directory
        self.host = host
        self.port = port
        self.server: Optional[socketserver.TCPServer] = None
        self.thread: Optional[threading.Thread] = None

    def start(self) -> None:
        """Bind and start serving. Raises OSError if the port can't be bound."""
        directory = str(self.directory)

        class Handler(QuietHTTPHandler):
            def __init__(self, *args: object, **kwargs: object) -> None:
                super().__init__(*args, directory=directory, **kwargs)  # type: ignore[arg-type]

        self.server = _PreviewTCPServer((self.host, self.port), Handler)
        self.port = self.server.server_address[1]

        self.thread = threading.Thread(target=self.server.serve_forever, daemon=True)
        self.thread.start()

    def stop(self) -> None:
        if self.server:
            self.server.shutdown()
            self.server.server_close()
            self.server = None

    @property
    def url(self) -> str:
        return f"http://localhost:{self.port}"

    @property
    def network_url(self) -> str:
        return f"http://{get_local_ip_address()}:{self.port}"


def start_server(config: BuildConfig) -> PreviewServer:
    server = PreviewServer(config.dist_dir, config.port)
    server.start()
    LOG.info("Server running at:")
    LOG.info("   Local:    %s", server.url)
    LOG.info("   Network:  %s", server.network_url)
    return server


# --- Event Handler ---
SETTLING = "settling"
COMPILING = "compiling"
DIRTY = "dirty"


class SourceEventHandler(FileSystemEventHandler):
    """Compiles added/changed sources and removes outputs of deleted ones.

    A path moves through ``settling`` (waiting for writes to finish) and
    ``compiling``. Events during settling are absorbed; an event during
    compiling marks the path ``dirty`` so it is compiled once more.
    """

    def __init__(self, config: BuildConfig):
        super().__init__()
        self.config = config
        self._pending: dict[str, str] = {}
        self._lock = threading.Lock()
        self._executor = ThreadPoolExecutor(
            max_workers=config.max_workers, thread_name_prefix="mjml-watch"
        )

    def _to_path(self, path: str | bytes) -> Path:
        if isinstance(path, bytes):
            return Path(path.decode("utf-8", errors="replace"))
        return Path(path)

    def _should_handle(self, path: Path) -> bool:
        if not is_source_file(self.config, path):
            return False
        try:
            path.relative_to(self.config.source_dir)
        except ValueError:
            return False
        return True

    def _submit(self, fn: Callable[..., Any], *args: Any) -> None:
        future = self._executor.submit(fn, *args)
        future.add_done_callback(self._report_failure)

    def _report_failure(self, future: Future) -> None:
        error = future.exception()
        if error is not None:
            LOG.error("Watcher error: %s", error)

    def schedule_compile(self, path: Path) -> None:
        key = str(path)
        with self._lock:
            state = self._pending.get(key)
            if state == SETTLING:
                return
            if state is not None:
                self._pending[key] = DIRTY
                return
            self._pending[key] = SETTLING
        self._submit(self._settle_and_compile, path)

    def _settle_and_compile(self, path: Path) -> None:
        key = str(path)
        try:
            while True:
                finished = wait_for_write_finish(
                    path, self.config.stability_threshold, self.config.poll_interval
                )
                with self._lock:
                    self._pending[key] = COMPILING
                if finished:
                    compile_file(self.config, path)
                with self._lock:
                    if self._pending.get(key) != DIRTY:
                        return
                    self._pending[key] = SETTLING
        finally:
            with self._lock:
                self._pending.pop(key, None)

    def schedule_remove(self, path: Path) -> None:
        self._submit(remove_compiled_file, self.config, path)

    def dispatch(self, event: FileSystemEvent) -> None:
        try:
            super().dispatch(event)
        except Exception as e:
            LOG.error("Watcher error: %s", e)

    def on_created(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        src = self._to_path(event.src_path)
        if self._should_handle(src):
            self.schedule_compile(src)

    def on_modified(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        src = self._to_path(event.src_path)
        if self._should_handle(src):
            self.schedule_compile(src)

    def on_deleted(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        src = self._to_path(event.src_path)
        if self._should_handle(src):
            self.schedule_remove(src)

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        src = self._to_path(event.src_path)
        dest_path = getattr(event, "dest_path", None)
        if self._should_handle(src):
            self.schedule_remove(src)
        if dest_path:
            dest = self._to_path(dest_path)
            if self._should_handle(dest):
                self.schedule_compile(dest)

    def close(self) -> None:
        """Wait for in-flight work to finish."""
        self._executor.shutdown(wait=True)


def start_watcher(
    config: BuildConfig, observer_factory: Callable[[], Any] = Observer
) -> tuple[Any, SourceEventHandler]:
    handler = SourceEventHandler(config)
    observer = observer_factory()
    observer.schedule(handler, str(config.source_dir), recursive=True)
    observer.start()
    return observer, handler


# --- Main ---
def configure_logging(level: int = logging.INFO) -> None:
    logging.basicConfig(
        level=level,
        format="[mjml] %(message)s",
        handlers=[RichHandler(show_time=False, show_path=False, markup=False)],
    )


def run(config: BuildConfig, watch: bool = False) -> int:
    ensure_source_dir_exists(config)
    build_all(config)

    if not watch:
        return 0

    server = start_server(config)
    observer, handler = start_watcher(config)
    LOG.info("Watching for changes in %s", config.watch_pattern)

    try:
        while True:
            observer.join(1)
    except KeyboardInterrupt:
        LOG.info("Stopping...")
    finally:
        observer.stop()
        observer.join()
        handler.close()
        server.stop()
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        description="Compile src/**/*.mjml into dist/ and optionally watch for changes."
    )
    parser.add_argument(
        "--watch",
        action="store_true",
        help="Serve dist/ on port 3000 and recompile on changes",
    )
    args = parser.parse_args(argv)

    configure_logging()
    try:
        return run(BuildConfig.from_cwd(), watch=args.watch)
    except Exception as e:
        LOG.error("Unhandled error: %s", e)
        return 1


if __name__ == "__main__":
    sys.exit(main())
