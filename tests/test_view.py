"""Tests for the per-stage FilesystemView."""

from pathlib import Path

from stagecraft.view import FilesystemView


def test_copy_is_independent() -> None:
    upstream = FilesystemView(label="tools-env")
    upstream.add_file("/opt/toolchain/VERSION", b"12\n")

    derived = upstream.copy(label="rust-env")
    derived.add_file("/opt/toolchain/VERSION", b"13\n")
    derived.remove("/opt")

    assert upstream.get("opt/toolchain/VERSION").data == b"12\n"
    assert "opt" not in derived
    assert derived.label == "rust-env"


def test_add_file_creates_parent_directories() -> None:
    view = FilesystemView()
    view.add_file("usr/lib/riscv64/libc.so", b"elf")
    assert view.is_dir("usr")
    assert view.is_dir("usr/lib/riscv64")
    assert view.paths() == ["usr", "usr/lib", "usr/lib/riscv64", "usr/lib/riscv64/libc.so"]


def test_subtree_and_graft_move_a_tree() -> None:
    source = FilesystemView()
    source.add_file("out/bin/tool", b"x", mode=0o755)
    source.add_file("out/bin/helper", b"y")

    entries = source.subtree("/out")
    assert [rel for rel, _ in entries] == ["", "bin", "bin/helper", "bin/tool"]

    target = FilesystemView()
    target.add_file("staging/usr/README", b"r")
    target.graft("/staging/usr", entries)
    assert target.get("staging/usr/bin/tool").mode == 0o755
    assert target.get("staging/usr/README").data == b"r"


def test_subtree_of_missing_path_is_empty() -> None:
    assert FilesystemView().subtree("nope") == []


def test_materialize_and_capture(tmp_path: Path) -> None:
    view = FilesystemView()
    view.add_file("bin/run", b"#!/bin/sh\n", mode=0o755)
    view.add_dir("var/empty")

    view.materialize(tmp_path)
    assert (tmp_path / "bin" / "run").read_bytes() == b"#!/bin/sh\n"
    assert (tmp_path / "var" / "empty").is_dir()

    (tmp_path / "bin" / "link").symlink_to("run")
    captured = FilesystemView.capture(tmp_path)
    assert captured.get("bin/run").is_executable
    assert captured.get("bin/link").target == "run"
    assert captured.is_dir("var/empty")
