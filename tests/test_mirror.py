import pytest
from conftest import write_file

from whatsnew import CopyFault, PathFault, mirror_file


def test_copies_into_same_relative_location(dirs):
    src = write_file(dirs.input / "2024" / "trip" / "img.jpg", 12)

    dst = mirror_file(src, dirs.input, dirs.output)

    assert dst == dirs.output / "2024" / "trip" / "img.jpg"
    assert dst.read_bytes() == src.read_bytes()


def test_overwrites_existing_destination(dirs):
    src = write_file(dirs.input / "a.txt", 5)
    write_file(dirs.output / "a.txt", 50)

    mirror_file(src, dirs.input, dirs.output)

    assert (dirs.output / "a.txt").stat().st_size == 5


def test_source_outside_input_root_is_rejected(dirs, tmp_path):
    stray = write_file(tmp_path / "stray.txt", 1)
    with pytest.raises(PathFault):
        mirror_file(stray, dirs.input, dirs.output)
    assert not dirs.output.exists()


def test_unwritable_destination_raises_copy_fault(dirs):
    src = write_file(dirs.input / "sub" / "a.txt", 1)
    write_file(dirs.output / "sub", 1)  # a file where a folder is needed

    with pytest.raises(CopyFault):
        mirror_file(src, dirs.input, dirs.output)


def test_missing_source_raises_copy_fault(dirs):
    with pytest.raises(CopyFault):
        mirror_file(dirs.input / "gone.txt", dirs.input, dirs.output)
