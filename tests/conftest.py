"""Shared pytest configuration, marker assignment and fixtures."""

from __future__ import annotations

import threading
from pathlib import Path

import pytest

from mjml_build import BuildConfig, CompileResult


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Attach suite markers based on test file path."""
    del config
    for item in items:
        parts = set(Path(str(item.fspath)).parts)
        if "integration_tests" in parts:
            item.add_marker(pytest.mark.integration)
        elif "unit_tests" in parts:
            item.add_marker(pytest.mark.unit)


class RecordingCompiler:
    """Stand-in for the MJML compiler that wraps the source text in <html>."""

    def __init__(self, errors: list | None = None) -> None:
        self.calls: list[Path] = []
        self.errors = list(errors or [])
        self._lock = threading.Lock()

    def __call__(self, text: str, file_path: Path) -> CompileResult:
        with self._lock:
            self.calls.append(Path(file_path))
        return CompileResult(html=f"<html>{text}</html>", errors=list(self.errors))

    def count(self, name: str) -> int:
        with self._lock:
            return sum(1 for path in self.calls if path.name == name)


@pytest.fixture
def compiler() -> RecordingCompiler:
    return RecordingCompiler()


@pytest.fixture
def project(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Temporary working directory with an empty src/ folder."""
    root = tmp_path.resolve()
    (root / "src").mkdir()
    monkeypatch.chdir(root)
    return root


@pytest.fixture
def config(project: Path, compiler: RecordingCompiler) -> BuildConfig:
    return BuildConfig.from_cwd(project, compiler=compiler)


@pytest.fixture
def write_source(config: BuildConfig):
    """Create a file under the source root and return its path."""

    def _write(rel: str, text: str = "<mjml></mjml>") -> Path:
        path = config.source_dir / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text, encoding="utf-8")
        return path

    return _write
