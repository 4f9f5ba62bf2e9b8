"""Tests for rendering image layers into a directory."""

import os
import stat
from pathlib import Path

import pytest

from ocifetch.errors import RenderIOError, WrongTargetPathError
from ocifetch.render import unpack, unpack_files, unpack_partial


class TestTargetCheck:
    """Target directory validation happens before any layer is read."""

    def test_relative_path(self, make_layer):
        with pytest.raises(WrongTargetPathError):
            unpack([make_layer(files={"a": b"x"})], Path("relative/dir"))
        assert not Path("relative").exists()

    def test_missing_directory(self, tmp_path, make_layer):
        missing = tmp_path / "missing"
        with pytest.raises(WrongTargetPathError) as exc_info:
            unpack([make_layer(files={"a": b"x"})], missing)
        assert exc_info.value.path == missing
        assert not missing.exists()

    def test_file_is_not_a_directory(self, tmp_path, make_layer):
        regular = tmp_path / "file"
        regular.write_text("x")
        with pytest.raises(WrongTargetPathError):
            unpack([make_layer(files={"a": b"x"})], regular)
        assert regular.read_text() == "x"

    def test_checked_before_layers(self, tmp_path):
        # Layer content is never looked at
        with pytest.raises(WrongTargetPathError):
            unpack([b"garbage"], tmp_path / "missing")


class TestUnpack:
    """Layer application and file attributes."""

    def test_single_layer(self, target, make_layer):
        layer = make_layer(
            ("dir", "etc"),
            ("file", "etc/hostname", b"box\n"),
            ("symlink", "etc/alias", "hostname"),
        )
        unpack([layer], target)

        assert (target / "etc" / "hostname").read_bytes() == b"box\n"
        assert os.readlink(target / "etc" / "alias") == "hostname"

    def test_upper_layer_wins(self, target, make_layer):
        lower = make_layer(files={"a.txt": b"one", "keep.txt": b"kept"})
        upper = make_layer(files={"a.txt": b"two"})
        unpack([lower, upper], target)

        assert (target / "a.txt").read_bytes() == b"two"
        assert (target / "keep.txt").read_bytes() == b"kept"

    def test_empty_layer_list(self, target):
        unpack([], target)
        assert list(target.iterdir()) == []

    def test_leading_dot_paths(self, target, make_layer):
        unpack([make_layer(("dir", "./"), ("file", "./usr/bin/tool", b"#!"))], target)
        assert (target / "usr" / "bin" / "tool").read_bytes() == b"#!"

    def test_permissions_preserved(self, target, make_layer):
        layer = make_layer(
            ("file", "bin/run", b"#!/bin/sh\n", 0o750),
            ("file", "secret", b"s", 0o600),
        )
        unpack([layer], target)

        assert stat.S_IMODE((target / "bin" / "run").stat().st_mode) == 0o750
        assert stat.S_IMODE((target / "secret").stat().st_mode) == 0o600

    def test_mtime_preserved(self, target, make_layer):
        unpack([make_layer(files={"a": b"x"})], target)
        assert int((target / "a").stat().st_mtime) == 1700000000

    def test_hard_link(self, target, make_layer):
        layer = make_layer(("file", "data", b"shared"), ("hardlink", "alias", "data"))
        unpack([layer], target)

        assert (target / "alias").read_bytes() == b"shared"
        assert (target / "alias").stat().st_ino == (target / "data").stat().st_ino

    def test_symlink_replaced_by_file(self, target, make_layer):
        lower = make_layer(("file", "real.conf", b"original"), ("symlink", "conf", "real.conf"))
        upper = make_layer(files={"conf": b"inline"})
        unpack([lower, upper], target)

        assert not (target / "conf").is_symlink()
        assert (target / "conf").read_bytes() == b"inline"
        assert (target / "real.conf").read_bytes() == b"original"

    def test_directory_replaced_by_file(self, target, make_layer):
        lower = make_layer(files={"opt/app/bin": b"x"})
        upper = make_layer(files={"opt/app": b"now a file"})
        unpack([lower, upper], target)

        assert (target / "opt" / "app").read_bytes() == b"now a file"

    def test_directories_merge(self, target, make_layer):
        lower = make_layer(files={"usr/lib/a.so": b"a"})
        upper = make_layer(("dir", "usr/lib"), ("file", "usr/lib/b.so", b"b"))
        unpack([lower, upper], target)

        assert sorted(p.name for p in (target / "usr" / "lib").iterdir()) == ["a.so", "b.so"]

    def test_escaping_entry_refused(self, target, make_layer):
        with pytest.raises(RenderIOError):
            unpack([make_layer(files={"../escape.txt": b"x"})], target)
        assert not (target.parent / "escape.txt").exists()

    def test_not_a_layer(self, target, not_gzip):
        with pytest.raises(RenderIOError):
            unpack([not_gzip], target)

    def test_not_gzip(self, target):
        with pytest.raises(RenderIOError):
            unpack([b"plain bytes, not compressed"], target)

    def test_failure_keeps_earlier_layers(self, target, make_layer):
        with pytest.raises(RenderIOError):
            unpack([make_layer(files={"first": b"1"}), b"broken"], target)
        assert (target / "first").read_bytes() == b"1"


class TestWhiteouts:
    """File and opaque whiteouts."""

    def test_file_whiteout(self, target, make_layer):
        lower = make_layer(files={"etc/foo": b"foo", "etc/bar": b"bar"})
        upper = make_layer(files={"etc/.wh.foo": b""})
        unpack([lower, upper], target)

        assert not (target / "etc" / "foo").exists()
        assert not (target / "etc" / ".wh.foo").exists()
        assert (target / "etc" / "bar").read_bytes() == b"bar"

    def test_whiteout_of_directory(self, target, make_layer):
        lower = make_layer(files={"var/cache/apt/a": b"a", "var/cache/apt/b": b"b"})
        upper = make_layer(files={"var/cache/.wh.apt": b""})
        unpack([lower, upper], target)

        assert not (target / "var" / "cache" / "apt").exists()
        assert (target / "var" / "cache").is_dir()

    def test_whiteout_of_symlink_keeps_target(self, target, make_layer):
        lower = make_layer(("file", "real", b"r"), ("symlink", "link", "real"))
        upper = make_layer(files={".wh.link": b""})
        unpack([lower, upper], target)

        assert not os.path.lexists(target / "link")
        assert (target / "real").read_bytes() == b"r"

    def test_missing_whiteout_target_is_tolerated(self, target, make_layer):
        unpack([make_layer(files={"etc/.wh.never-existed": b"", "etc/ok": b"ok"})], target)
        assert sorted(p.name for p in (target / "etc").iterdir()) == ["ok"]

    def test_opaque_directory(self, target, make_layer):
        lower = make_layer(files={"d/old": b"old", "d/sub/x": b"x", "other/y": b"y"})
        upper = make_layer(files={"d/.wh..wh..opq": b"", "d/new": b"new"})
        unpack([lower, upper], target)

        assert sorted(p.name for p in (target / "d").iterdir()) == ["new"]
        assert (target / "other" / "y").read_bytes() == b"y"

    def test_opaque_keeps_same_layer_subentries(self, target, make_layer):
        lower = make_layer(files={"d/sub/lower": b"l"})
        upper = make_layer(files={"d/.wh..wh..opq": b"", "d/sub/upper": b"u"})
        unpack([lower, upper], target)

        assert sorted(p.name for p in (target / "d" / "sub").iterdir()) == ["upper"]

    def test_opaque_marker_after_entries(self, target, make_layer):
        lower = make_layer(files={"d/old": b"old"})
        upper = make_layer(files={"d/new": b"new", "d/.wh..wh..opq": b""})
        unpack([lower, upper], target)

        assert sorted(p.name for p in (target / "d").iterdir()) == ["new"]

    def test_layer_overlay_with_whiteout(self, target, make_layer):
        lower = make_layer(files={"etc/hosts": b"A", "etc/shadow": b"secret"})
        upper = make_layer(files={"etc/hosts": b"B", "etc/.wh.shadow": b""})
        unpack([lower, upper], target)

        assert (target / "etc" / "hosts").read_bytes() == b"B"
        assert not (target / "etc" / "shadow").exists()
        assert not (target / "etc" / ".wh.shadow").exists()

    def test_whiteout_then_readd_in_later_layer(self, target, make_layer):
        layers = [
            make_layer(files={"f": b"1"}),
            make_layer(files={".wh.f": b""}),
            make_layer(files={"f": b"3"}),
        ]
        unpack(layers, target)
        assert (target / "f").read_bytes() == b"3"


class TestUnpackFiles:
    """Layers read from disk."""

    def test_reads_layers_in_order(self, tmp_path, target, make_layer):
        lower = tmp_path / "lower.tar.gz"
        upper = tmp_path / "upper.tar.gz"
        lower.write_bytes(make_layer(files={"a": b"lower", "gone": b"x"}))
        upper.write_bytes(make_layer(files={"a": b"upper", ".wh.gone": b""}))

        unpack_files([lower, str(upper)], target)

        assert (target / "a").read_bytes() == b"upper"
        assert not (target / "gone").exists()

    def test_missing_file(self, tmp_path, target):
        with pytest.raises(RenderIOError):
            unpack_files([tmp_path / "nope.tar.gz"], target)

    def test_wrong_target(self, tmp_path):
        with pytest.raises(WrongTargetPathError):
            unpack_files([], tmp_path / "missing")


class TestUnpackPartial:
    """Prefix-restricted extraction."""

    def test_only_prefix_extracted(self, target, make_layer):
        layer = make_layer(files={
            "etc/passwd": b"root",
            "etc/ssl/cert.pem": b"pem",
            "etcetera/no": b"no",
            "usr/bin/sh": b"sh",
        })
        unpack_partial([layer], target, "etc")

        assert (target / "etc" / "passwd").read_bytes() == b"root"
        assert (target / "etc" / "ssl" / "cert.pem").read_bytes() == b"pem"
        assert not (target / "etcetera").exists()
        assert not (target / "usr").exists()

    def test_whiteouts_outside_prefix_ignored(self, target, make_layer):
        lower = make_layer(files={"etc/a": b"a", "etc/b": b"b"})
        upper = make_layer(files={"etc/.wh.a": b"", ".wh.usr": b"", "usr/.wh..wh..opq": b""})
        unpack_partial([lower, upper], target, "/etc/")

        assert not (target / "etc" / "a").exists()
        assert (target / "etc" / "b").read_bytes() == b"b"

    def test_escaping_prefix(self, target, make_layer):
        with pytest.raises(ValueError):
            unpack_partial([make_layer(files={"a": b"x"})], target, "../up")

    def test_whiteout_of_prefix(self, target, make_layer):
        lower = make_layer(files={"etc/ssl/old": b"old", "etc/hosts": b"h"})
        upper = make_layer(files={"etc/.wh.ssl": b""})
        unpack_partial([lower, upper], target, "etc/ssl")

        assert not (target / "etc" / "ssl").exists()
        assert not (target / "etc" / ".wh.ssl").exists()

    def test_whiteout_of_prefix_ancestor(self, target, make_layer):
        lower = make_layer(files={"etc/ssl/old": b"old"})
        upper = make_layer(files={".wh.etc": b""})
        unpack_partial([lower, upper], target, "etc/ssl")

        assert not (target / "etc" / "ssl").exists()

    def test_opaque_ancestor_clears_prefix(self, target, make_layer):
        lower = make_layer(files={"etc/ssl/old": b"old", "etc/ssl/certs/a.pem": b"a"})
        upper = make_layer(files={"etc/.wh..wh..opq": b"", "etc/ssl/new": b"new"})
        unpack_partial([lower, upper], target, "etc/ssl")

        assert sorted(p.name for p in (target / "etc" / "ssl").iterdir()) == ["new"]
        assert not (target / "etc" / ".wh..wh..opq").exists()

    def test_opaque_ancestor_without_new_content(self, target, make_layer):
        lower = make_layer(files={"etc/ssl/old": b"old"})
        upper = make_layer(files={"etc/.wh..wh..opq": b"", "etc/hosts": b"h"})
        unpack_partial([lower, upper], target, "etc/ssl")

        assert not (target / "etc" / "ssl").exists()

    def test_sibling_whiteout_keeps_prefix(self, target, make_layer):
        lower = make_layer(files={"etc/ssl/old": b"old"})
        upper = make_layer(files={"etc/.wh.ss": b"", "etc/.wh.ssl-extra": b""})
        unpack_partial([lower, upper], target, "etc/ssl")

        assert (target / "etc" / "ssl" / "old").read_bytes() == b"old"
