import os
import sys

import pytest
from conftest import write_file

from whatsnew import IgnoreMatcher, ScanFault, scan_directory


def test_yields_regular_files_with_sizes_in_stable_order(dirs):
    write_file(dirs.input / "b.txt", 2)
    write_file(dirs.input / "a.txt", 10)
    write_file(dirs.input / "sub" / "z.bin", 0)
    write_file(dirs.input / "sub" / "deeper" / "c.txt", 3)
    (dirs.input / "empty").mkdir()

    first = [(p.relative_to(dirs.input).as_posix(), size) for p, size in scan_directory(dirs.input)]
    second = [(p.relative_to(dirs.input).as_posix(), size) for p, size in scan_directory(dirs.input)]

    assert first == [
        ("a.txt", 10),
        ("b.txt", 2),
        ("sub/z.bin", 0),
        ("sub/deeper/c.txt", 3),
    ]
    assert first == second


def test_paths_are_absolute(dirs):
    write_file(dirs.input / "a.txt", 1)
    (obs,) = list(scan_directory(dirs.input))
    assert obs.path.is_absolute()
    assert obs.path == dirs.input / "a.txt"


def test_scan_is_lazy(dirs):
    write_file(dirs.input / "a.txt", 1)
    it = scan_directory(dirs.input)
    write_file(dirs.input / "b.txt", 1)
    assert [obs.path.name for obs in it] == ["a.txt", "b.txt"]


def test_missing_root_raises_scan_fault(tmp_path):
    with pytest.raises(ScanFault):
        list(scan_directory(tmp_path / "nope"))


@pytest.mark.skipif(sys.platform == "win32", reason="symlinks need privileges on Windows")
def test_symlinks_are_skipped(dirs, tmp_path):
    outside = write_file(tmp_path / "elsewhere" / "big.bin", 100)
    write_file(dirs.input / "a.txt", 1)
    os.symlink(outside, dirs.input / "link.bin")
    os.symlink(outside.parent, dirs.input / "linkdir")

    assert [obs.path.name for obs in scan_directory(dirs.input)] == ["a.txt"]


@pytest.mark.skipif(sys.platform == "win32" or os.geteuid() == 0, reason="needs POSIX permissions as non-root")
def test_unreadable_directory_aborts_walk(dirs):
    write_file(dirs.input / "a.txt", 1)
    locked = dirs.input / "locked"
    write_file(locked / "secret.txt", 1)
    locked.chmod(0)
    try:
        with pytest.raises(ScanFault):
            list(scan_directory(dirs.input))
    finally:
        locked.chmod(0o755)


def test_ignore_patterns_skip_files_and_prune_directories(dirs):
    write_file(dirs.input / "a.txt", 1)
    write_file(dirs.input / "a.tmp", 1)
    write_file(dirs.input / "build" / "out.o", 1)
    write_file(dirs.input / "src" / "b.txt", 1)
    write_file(dirs.input / "src" / "c.tmp", 1)

    ignore = IgnoreMatcher(dirs.input, ["*.tmp", "build/"])
    names = [obs.path.relative_to(dirs.input).as_posix() for obs in scan_directory(dirs.input, ignore)]

    assert names == ["a.txt", "src/b.txt"]
