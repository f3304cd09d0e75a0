"""Shared fixtures: a toolchain over JSON stand-ins for Mach-O files."""

import json
from pathlib import Path

import pytest

from relocbundle import (
    CommandError,
    EnumerationError,
    LoadCommands,
    Toolchain,
    validate_file,
)


class FakeToolchain(Toolchain):
    """Stores each fake binary's load commands as JSON.

    Every mutating call is recorded in ``calls`` so tests can check the
    order in which rewriting and signing happen.
    """

    name = "fake"

    def __init__(self):
        super().__init__(sign_identity="-")
        self.calls: list[tuple[str, str]] = []
        self.fail_change: set[str] = set()
        self.fail_sign: set[str] = set()

    def _read(self, path: Path) -> dict:
        try:
            return json.loads(Path(path).read_text())
        except (OSError, ValueError) as e:
            raise EnumerationError(f"Cannot read {path}: {e}") from e

    def _write(self, path: Path, data: dict) -> None:
        Path(path).write_text(json.dumps(data))

    def inspect(self, path: Path) -> LoadCommands:
        data = self._read(path)
        return LoadCommands(
            data.get("id"),
            tuple(data.get("deps", [])),
            tuple(data.get("rpaths", [])),
        )

    def check_binary(self, path: Path) -> None:
        validate_file(path)

    def change_reference(self, binary: Path, old: str, new: str) -> None:
        if binary.name in self.fail_change:
            raise CommandError(f"install_name_tool -change {old}", 1)
        data = self._read(binary)
        data["deps"] = [new if d == old else d for d in data.get("deps", [])]
        self._write(binary, data)
        self.calls.append(("change", binary.name))

    def change_id(self, binary: Path, new_id: str) -> None:
        if binary.name in self.fail_change:
            raise CommandError(f"install_name_tool -id {new_id}", 1)
        data = self._read(binary)
        data["id"] = new_id
        self._write(binary, data)
        self.calls.append(("id", binary.name))

    def sign(self, binary: Path) -> None:
        if binary.name in self.fail_sign:
            raise CommandError(f"codesign {binary}", 1)
        self.calls.append(("sign", binary.name))


def write_binary(
    path: Path,
    deps=(),
    install_id=None,
    rpaths=(),
    executable=False,
    tag=None,
) -> Path:
    """Write a fake binary with the given load commands."""
    path.parent.mkdir(parents=True, exist_ok=True)
    data = {"id": install_id, "deps": list(deps), "rpaths": list(rpaths)}
    if tag is not None:
        data["tag"] = tag
    path.write_text(json.dumps(data))
    if executable:
        path.chmod(0o755)
    return path


def read_binary(path: Path) -> dict:
    return json.loads(Path(path).read_text())


@pytest.fixture
def toolchain():
    return FakeToolchain()


@pytest.fixture
def make_binary():
    return write_binary


@pytest.fixture
def load_binary():
    return read_binary


@pytest.fixture(autouse=True)
def no_dyld_env(monkeypatch):
    """Keep DYLD_* variables of the host out of the search paths."""
    monkeypatch.delenv("DYLD_LIBRARY_PATH", raising=False)
    monkeypatch.delenv("DYLD_FALLBACK_LIBRARY_PATH", raising=False)
