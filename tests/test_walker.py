"""Tests for the closure walk."""

from pathlib import Path

import pytest

from relocbundle import (
    BinaryRef,
    ClosureRegistry,
    ClosureWalker,
    DependencyEnumerator,
    EnumerationError,
    PathResolver,
    SearchPaths,
    ValidationError,
)


@pytest.fixture
def libs_dir(tmp_path: Path) -> Path:
    path = tmp_path / "bundle" / "libs"
    path.mkdir(parents=True)
    return path


def make_walker(toolchain, exec_dir, libs_dir, search=()):
    enumerator = DependencyEnumerator(toolchain)
    resolver = PathResolver(enumerator, SearchPaths(search), exec_dir)
    return ClosureWalker(enumerator, resolver, ClosureRegistry(libs_dir))


class TestClosureRegistry:
    """Tests for ClosureRegistry bookkeeping."""

    def test_add_copies_and_tracks_origin(self, tmp_path, libs_dir, make_binary):
        src = make_binary(tmp_path / "src" / "libA.dylib", tag="a")
        registry = ClosureRegistry(libs_dir)
        dest = registry.add("libA.dylib", src)
        assert dest == libs_dir / "libA.dylib"
        assert dest.read_text() == src.read_text()
        assert "libA.dylib" in registry
        assert registry.origins["libA.dylib"] == src

    def test_add_makes_copy_writable(self, tmp_path, libs_dir, make_binary):
        src = make_binary(tmp_path / "src" / "libA.dylib")
        src.chmod(0o444)
        dest = ClosureRegistry(libs_dir).add("libA.dylib", src)
        assert dest.stat().st_mode & 0o200

    def test_add_follows_symlinks(self, tmp_path, libs_dir, make_binary):
        real = make_binary(tmp_path / "src" / "libA.1.2.dylib", tag="real")
        link = tmp_path / "src" / "libA.dylib"
        link.symlink_to(real.name)
        dest = ClosureRegistry(libs_dir).add("libA.dylib", link)
        assert not dest.is_symlink()
        assert dest.read_text() == real.read_text()

    def test_missing_names_sorted_unique_basenames(self, libs_dir):
        registry = ClosureRegistry(libs_dir)
        for raw in ("@rpath/libZ.dylib", "/opt/libZ.dylib", "libB.dylib"):
            registry.record_missing(BinaryRef.parse(raw))
        assert registry.missing_names() == ["libB.dylib", "libZ.dylib"]

    def test_unvisited(self, tmp_path, libs_dir, make_binary):
        registry = ClosureRegistry(libs_dir)
        a = make_binary(tmp_path / "src" / "libA.dylib")
        b = make_binary(tmp_path / "src" / "libB.dylib")
        registry.add("libA.dylib", a)
        registry.add("libB.dylib", b)
        registry.mark_visited(a)
        assert registry.unvisited() == [b]


class TestClosureWalker:
    """Tests for ClosureWalker.walk()."""

    def test_transitive_closure(self, tmp_path, libs_dir, toolchain, make_binary):
        lib_dir = tmp_path / "opt" / "lib"
        exe = make_binary(tmp_path / "build" / "app", deps=[str(lib_dir / "libA.dylib")])
        make_binary(lib_dir / "libA.dylib", deps=["@loader_path/libB.dylib"])
        make_binary(lib_dir / "libB.dylib", deps=["@rpath/libC.dylib"], rpaths=["@loader_path"])
        make_binary(lib_dir / "libC.dylib", deps=["/usr/lib/libc++.1.dylib"])

        registry = make_walker(toolchain, exe.parent, libs_dir).walk(exe)

        assert registry.names() == ["libA.dylib", "libB.dylib", "libC.dylib"]
        assert registry.missing == set()
        assert sorted(p.name for p in libs_dir.iterdir()) == registry.names()

    def test_every_member_is_visited(self, tmp_path, libs_dir, toolchain, make_binary):
        lib_dir = tmp_path / "opt" / "lib"
        exe = make_binary(tmp_path / "build" / "app", deps=["libA.dylib", "libB.dylib"])
        make_binary(lib_dir / "libA.dylib", deps=["libC.dylib"])
        make_binary(lib_dir / "libB.dylib", deps=["libC.dylib"])
        make_binary(lib_dir / "libC.dylib")

        registry = make_walker(toolchain, exe.parent, libs_dir, [lib_dir]).walk(exe)

        assert registry.unvisited() == []
        for source in registry.origins.values():
            assert registry.is_visited(source)

    def test_cycle_terminates(self, tmp_path, libs_dir, toolchain, make_binary):
        lib_dir = tmp_path / "opt" / "lib"
        exe = make_binary(tmp_path / "build" / "app", deps=["libP.dylib"])
        make_binary(lib_dir / "libP.dylib", deps=["libQ.dylib"])
        make_binary(lib_dir / "libQ.dylib", deps=["libP.dylib"])

        registry = make_walker(toolchain, exe.parent, libs_dir, [lib_dir]).walk(exe)

        assert registry.names() == ["libP.dylib", "libQ.dylib"]
        assert sorted(p.name for p in libs_dir.iterdir()) == [
            "libP.dylib",
            "libQ.dylib",
        ]

    def test_cycle_back_to_root(self, tmp_path, libs_dir, toolchain, make_binary):
        lib_dir = tmp_path / "build"
        exe = make_binary(lib_dir / "libRoot.dylib", deps=["libP.dylib"])
        make_binary(lib_dir / "libP.dylib", deps=["libRoot.dylib"])

        registry = make_walker(toolchain, exe.parent, libs_dir).walk(exe)

        assert registry.names() == ["libP.dylib", "libRoot.dylib"]

    def test_same_basename_first_copied_wins(
        self, tmp_path, libs_dir, toolchain, make_binary
    ):
        exe = make_binary(
            tmp_path / "build" / "app",
            deps=[str(tmp_path / "a" / "libX.dylib"), str(tmp_path / "b" / "libX.dylib")],
        )
        make_binary(tmp_path / "a" / "libX.dylib", tag="a")
        make_binary(tmp_path / "b" / "libX.dylib", tag="b", deps=["libNever.dylib"])

        registry = make_walker(toolchain, exe.parent, libs_dir).walk(exe)

        assert registry.origins["libX.dylib"] == tmp_path / "a" / "libX.dylib"
        assert registry.missing == set()

    def test_depth_first_discovery(self, tmp_path, libs_dir, toolchain, make_binary):
        # libA's subtree is finished before libB is resolved, so the
        # libX found next to libA wins over the one next to libB.
        exe = make_binary(
            tmp_path / "build" / "app",
            deps=[str(tmp_path / "a" / "libA.dylib"), str(tmp_path / "b" / "libB.dylib")],
        )
        make_binary(tmp_path / "a" / "libA.dylib", deps=["libX.dylib"])
        make_binary(tmp_path / "a" / "libX.dylib", tag="a")
        make_binary(tmp_path / "b" / "libB.dylib", deps=["libX.dylib"])
        make_binary(tmp_path / "b" / "libX.dylib", tag="b")

        registry = make_walker(toolchain, exe.parent, libs_dir).walk(exe)

        assert registry.origins["libX.dylib"] == tmp_path / "a" / "libX.dylib"

    def test_missing_recorded_and_walk_continues(
        self, tmp_path, libs_dir, toolchain, make_binary
    ):
        lib_dir = tmp_path / "opt" / "lib"
        exe = make_binary(
            tmp_path / "build" / "app",
            deps=["@rpath/libZ.dylib", "libA.dylib", "/nowhere/libY.dylib"],
        )
        make_binary(lib_dir / "libA.dylib", deps=["libZ.dylib", "libB.dylib"])
        make_binary(lib_dir / "libB.dylib")

        registry = make_walker(toolchain, exe.parent, libs_dir, [lib_dir]).walk(exe)

        assert registry.names() == ["libA.dylib", "libB.dylib"]
        assert registry.missing_names() == ["libY.dylib", "libZ.dylib"]

    def test_sweep_walks_copied_but_unprocessed(
        self, tmp_path, libs_dir, toolchain, make_binary
    ):
        lib_dir = tmp_path / "opt" / "lib"
        exe = make_binary(tmp_path / "build" / "app")
        early = make_binary(lib_dir / "libS.dylib", deps=["libT.dylib"])
        make_binary(lib_dir / "libT.dylib")

        walker = make_walker(toolchain, exe.parent, libs_dir, [lib_dir])
        walker.registry.add("libS.dylib", early)
        registry = walker.walk(exe)

        assert registry.names() == ["libS.dylib", "libT.dylib"]
        assert registry.unvisited() == []

    def test_enumeration_failure_aborts(self, tmp_path, libs_dir, toolchain, make_binary):
        lib_dir = tmp_path / "opt" / "lib"
        exe = make_binary(tmp_path / "build" / "app", deps=["libA.dylib"])
        lib_dir.mkdir(parents=True)
        (lib_dir / "libA.dylib").write_text("garbage")

        with pytest.raises(EnumerationError):
            make_walker(toolchain, exe.parent, libs_dir, [lib_dir]).walk(exe)

    def test_invalid_library_aborts(self, tmp_path, libs_dir, toolchain, make_binary):
        lib_dir = tmp_path / "opt" / "lib"
        lib_dir.mkdir(parents=True)
        exe = make_binary(tmp_path / "build" / "app", deps=["libEmpty.dylib"])
        (lib_dir / "libEmpty.dylib").touch()

        with pytest.raises(ValidationError, match="empty"):
            make_walker(toolchain, exe.parent, libs_dir, [lib_dir]).walk(exe)
