"""Tests for the atomic writers and tolerant readers behind every state file."""

from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

import piv_orchestrator.file_io as file_io

pytestmark = pytest.mark.unit


def test_path_lock_reuses_same_lock_for_resolved_aliases(tmp_path: Path) -> None:
    primary = tmp_path / ".agents" / "manifest.yaml"
    alias = tmp_path / ".agents" / ".." / ".agents" / "manifest.yaml"

    assert file_io._path_lock(primary) is file_io._path_lock(alias)


def test_replace_file_with_retry_retries_permission_denied_then_succeeds(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    src = tmp_path / "manifest.yaml.tmp"
    dst = tmp_path / "manifest.yaml"
    src.write_text("phases: {}\n", encoding="utf-8")
    dst.write_text("old: true\n", encoding="utf-8")

    attempts = {"count": 0}
    original_replace = Path.replace

    def flaky_replace(self: Path, target: Path) -> Path:
        if self == src and Path(target) == dst and attempts["count"] < 2:
            attempts["count"] += 1
            raise PermissionError("file locked")
        return original_replace(self, target)

    monkeypatch.setattr(Path, "replace", flaky_replace)
    monkeypatch.setattr(file_io.time, "sleep", lambda seconds: None)

    file_io._replace_file_with_retry(src, dst)

    assert attempts["count"] == 2
    assert dst.read_text(encoding="utf-8") == "phases: {}\n"


def test_replace_file_with_retry_raises_other_oserror_immediately(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    def fail_replace(_self: Path, _target: Path) -> Path:
        raise OSError(5, "io error")

    monkeypatch.setattr(Path, "replace", fail_replace)

    with pytest.raises(OSError) as exc_info:
        file_io._replace_file_with_retry(tmp_path / "a", tmp_path / "b")

    assert exc_info.value.errno == 5


def test_replace_file_with_retry_gives_up_after_max_retries(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    sleep_calls: list[float] = []

    def always_locked(_self: Path, _target: Path) -> Path:
        raise PermissionError("still locked")

    monkeypatch.setattr(Path, "replace", always_locked)
    monkeypatch.setattr(file_io.time, "sleep", sleep_calls.append)

    with pytest.raises(PermissionError):
        file_io._replace_file_with_retry(tmp_path / "a", tmp_path / "b")

    assert len(sleep_calls) == file_io._ATOMIC_REPLACE_MAX_RETRIES - 1


def test_atomic_write_text_creates_parents_and_replaces(tmp_path: Path) -> None:
    path = tmp_path / "nested" / ".agents" / "orchestrator.pid"

    file_io.atomic_write_text(path, "old")
    file_io.atomic_write_text(path, "new")

    assert path.read_text(encoding="utf-8") == "new"
    assert list(path.parent.glob("*.tmp")) == []


def test_atomic_write_text_cleans_temp_file_when_replace_raises(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    path = tmp_path / ".agents" / "manifest.yaml"

    def _busy(_src: Path, _dst: Path) -> None:
        raise PermissionError("busy")

    monkeypatch.setattr(file_io, "_replace_file_with_retry", _busy)

    with pytest.raises(PermissionError):
        file_io.atomic_write_text(path, "content")

    assert list(path.parent.glob(f"{path.name}.*.tmp")) == []


def test_yaml_round_trip_keeps_key_order(tmp_path: Path) -> None:
    path = tmp_path / "manifest.yaml"

    file_io.atomic_write_yaml(path, {"zeta": 1, "alpha": {"nested": "é"}})

    text = path.read_text(encoding="utf-8")
    assert text.index("zeta") < text.index("alpha")
    assert file_io.read_yaml(path) == {"zeta": 1, "alpha": {"nested": "é"}}


def test_read_yaml_missing_is_none_and_malformed_raises(tmp_path: Path) -> None:
    assert file_io.read_yaml(tmp_path / "missing.yaml") is None

    bad = tmp_path / "bad.yaml"
    bad.write_text("key: [unclosed\n", encoding="utf-8")
    with pytest.raises(yaml.YAMLError):
        file_io.read_yaml(bad)


@pytest.mark.parametrize(
    ("content", "expected"),
    [
        (json.dumps({"pid": 12}), {"pid": 12}),
        ("[1, 2]", None),
        ("{broken", None),
    ],
)
def test_read_json_tolerant(tmp_path: Path, content: str, expected: object) -> None:
    path = tmp_path / "data.json"
    path.write_text(content, encoding="utf-8")

    assert file_io.read_json_tolerant(path) == expected


def test_read_json_tolerant_missing_file(tmp_path: Path) -> None:
    assert file_io.read_json_tolerant(tmp_path / "nope.json") is None


def test_atomic_write_json_is_indented(tmp_path: Path) -> None:
    path = tmp_path / "signal.json"

    file_io.atomic_write_json(path, {"action": "pause"})

    assert path.read_text(encoding="utf-8") == '{\n  "action": "pause"\n}\n'
