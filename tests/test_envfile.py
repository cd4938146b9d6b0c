"""Tests for the line-preserving dotenv store."""
from __future__ import annotations

from pathlib import Path

import pytest

from canastactl.errors import NotFound
from canastactl.farm.envfile import (
    EnvFile,
    is_enabled,
    resolve_key,
    split_profiles,
)


def _env(tmp_path: Path, text: str) -> EnvFile:
    path = tmp_path / ".env"
    path.write_text(text, encoding="utf-8")
    return EnvFile(path)


def test_read_unquotes_and_skips_lines_without_equals(tmp_path: Path) -> None:
    """Values split at the first '=' and lose one pair of double quotes."""
    env = _env(tmp_path, '# comment\nA=1\nB="two words"\nC=x=y\nnot a setting\n')
    assert env.read() == {"A": "1", "B": "two words", "C": "x=y"}


def test_read_missing_file_raises(tmp_path: Path) -> None:
    with pytest.raises(NotFound):
        EnvFile(tmp_path / ".env").read()


def test_set_replaces_in_place_and_appends(tmp_path: Path) -> None:
    """Existing lines keep their position; new keys are appended."""
    env = _env(tmp_path, "# header\nA=1\n\nB=2\n")
    env.set_many({"A": "10", "C": "3"})

    assert env.path.read_text(encoding="utf-8") == "# header\nA=10\n\nB=2\nC=3\n"


def test_set_only_touches_exact_key(tmp_path: Path) -> None:
    """A key that is a prefix of another key does not match it."""
    env = _env(tmp_path, "HTTP_PORT_X=1\n")
    env.set("HTTP_PORT", "8080")
    assert env.read() == {"HTTP_PORT_X": "1", "HTTP_PORT": "8080"}


def test_delete_removes_key(tmp_path: Path) -> None:
    env = _env(tmp_path, "A=1\nB=2\n")
    env.delete("A")
    assert env.path.read_text(encoding="utf-8") == "B=2\n"


def test_delete_missing_key_raises_and_leaves_file(tmp_path: Path) -> None:
    env = _env(tmp_path, "A=1\n")
    with pytest.raises(NotFound, match="key 'B' not found"):
        env.delete_many(["A", "B"])
    assert env.read() == {"A": "1"}


def test_resolve_key_prefers_existing_spelling() -> None:
    assert resolve_key(["Custom_Key"], "custom-key") == "Custom_Key"
    assert resolve_key([], "https-port") == "HTTPS_PORT"


def test_feature_helpers() -> None:
    assert is_enabled({"FLAG": "TRUE"}, "FLAG")
    assert not is_enabled({"FLAG": "yes"}, "FLAG")
    assert not is_enabled({}, "FLAG")
    assert split_profiles(" web, ,observable ") == ["web", "observable"]
