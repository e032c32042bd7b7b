"""Shared pytest configuration: markers, execution order and project fixtures."""

from __future__ import annotations

import subprocess
from pathlib import Path

import pytest

from piv_orchestrator.manifest import ManifestStore
from piv_orchestrator.registry import REGISTRY_ENV_VAR


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line("markers", "unit: pure in-memory tests")
    config.addinivalue_line("markers", "integration: tests that touch git, files or threads")
    config.addinivalue_line("markers", "slow: tests that wait on timers or subprocesses")


def pytest_collection_modifyitems(items: list[pytest.Item]) -> None:
    """Run unit tests first, integration tests second, slow tests last."""

    def sort_key(item: pytest.Item) -> tuple[int, str]:
        if item.get_closest_marker("slow"):
            return (2, item.nodeid)
        if item.get_closest_marker("integration"):
            return (1, item.nodeid)
        return (0, item.nodeid)

    items.sort(key=sort_key)


@pytest.fixture(autouse=True)
def _isolated_registry(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point the shared registry at a per-test file so ``~/.piv`` is never touched."""
    path = tmp_path / "registry" / "registry.yaml"
    monkeypatch.setenv(REGISTRY_ENV_VAR, str(path))
    return path


def init_repo(path: Path) -> Path:
    """Create a git repository with one commit containing ``README.md``."""
    path.mkdir(parents=True, exist_ok=True)
    subprocess.run(["git", "init"], cwd=path, check=True, capture_output=True)
    subprocess.run(["git", "config", "user.name", "Test"], cwd=path, check=True)
    subprocess.run(["git", "config", "user.email", "test@example.com"], cwd=path, check=True)
    (path / "README.md").write_text("hello\n", encoding="utf-8")
    subprocess.run(["git", "add", "-A"], cwd=path, check=True, capture_output=True)
    subprocess.run(["git", "commit", "-m", "init"], cwd=path, check=True, capture_output=True)
    return path


@pytest.fixture
def project(tmp_path: Path) -> Path:
    path = tmp_path / "demo-app"
    path.mkdir(exist_ok=True)
    return path


@pytest.fixture
def git_project(tmp_path: Path) -> Path:
    return init_repo(tmp_path / "demo-app")


@pytest.fixture
def store(project: Path) -> ManifestStore:
    return ManifestStore(project)
