import logging
import os
import sys
from types import SimpleNamespace

import pytest

# Ensure the repo root is importable so `import whatsnew` works without installing.
ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

import whatsnew  # noqa: E402


@pytest.fixture
def dirs(tmp_path):
    input_dir = tmp_path / "photos"
    input_dir.mkdir()
    return SimpleNamespace(
        input=input_dir.resolve(),
        output=(tmp_path / "out").resolve(),
        db=(tmp_path / "db").resolve(),
    )


@pytest.fixture
def logger(caplog):
    # Not a child of "whatsnew": that logger stops propagation once main() configures it.
    caplog.set_level(logging.DEBUG, logger="test_whatsnew")
    return logging.getLogger("test_whatsnew")


@pytest.fixture
def make_options(dirs):
    def _make(write=False, dry_run=False, ignore=()):
        return whatsnew.RunOptions(
            input_dir=dirs.input,
            output_dir=dirs.output,
            db_dir=dirs.db,
            write=write,
            dry_run=dry_run,
            ignore=tuple(ignore),
        )

    return _make


def write_file(path, size):
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(b"x" * size)
    return path
