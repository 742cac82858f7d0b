# /whatsnew.py
"""
What's New (incremental mirror, no UI)
- Scans an input folder and reports files that are new or changed since the last run.
- The change signal is file size only: a file rewritten with the same length is not seen.
- Copies new/changed files into an output folder, keeping their relative paths.
- Remembers last-known sizes in an index. During a run the index lives in a scratch
  SQLite store; with --write it is saved to <db-path>/<input folder name>.db and
  loaded back on the next run.
- --dry-run never touches the output folder. --write and --dry-run are independent:
  "--write --dry-run" marks everything as seen without copying.
- Optional gitignore-style exclusions via --ignore or the config file.
- Styled console output:
  - NEW / COPY green
  - UPDATED orange
  - errors red
  - file paths white
  - snapshot paths light brown
- Log file (--log-dir) is always plain (no color codes).
- Fail-fast: the first error aborts the run with exit status 1.

Usage
  pip install pathspec colorama
  whatsnew -i /src -o /dst
  whatsnew -i /src -o /dst --write --db-path ~/.whatsnew/db
  whatsnew -i /src -o /dst --write --dry-run --ignore "*.tmp"
"""

from __future__ import annotations

import argparse
import datetime as dt
import json
import logging
import os
import shutil
import sqlite3
import stat
import struct
import sys
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import Iterable, Iterator, NamedTuple, Optional

from colorama import init as colorama_init
from pathspec import GitIgnoreSpec

APP_DIR = Path.home() / ".whatsnew"
CONFIG_PATH = APP_DIR / "config.json"

LOGGER_NAME = "whatsnew"
SNAPSHOT_SUFFIX = ".db"
SNAPSHOT_VERSION = 1


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "NEW": Ansi.GREEN,
    "UPDATED": Ansi.ORANGE,
    "COPY": Ansi.GREEN,
    "LOAD_DB": Ansi.LIGHT_BROWN,
    "SAVE_DB": Ansi.LIGHT_BROWN,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except Exception:
        return False


class ColorizingFormatter(logging.Formatter):
    def __init__(self, use_color: bool, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        if not self.use_color:
            return base

        if record.levelno >= logging.ERROR:
            return f"{Ansi.RED}{base}{Ansi.RESET}"

        action = getattr(record, "action", None)
        path_text = getattr(record, "path_text", None)
        is_snapshot = getattr(record, "is_snapshot", False)

        if action:
            action_color = ACTION_COLORS.get(action, "")
            if action_color and action in base:
                base = base.replace(action, f"{action_color}{action}{Ansi.RESET}", 1)

        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if is_snapshot else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "whatsnew") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.DEBUG if verbose else logging.INFO)
    logger.propagate = False

    if logger.handlers:
        return logger

    colorama_init()

    fmt = "%(asctime)s | %(levelname)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))
    logger.addHandler(ch)

    if log_dir is not None:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_path = log_dir / _today_log_name()
        fh = logging.FileHandler(log_path, encoding="utf-8")
        fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
        logger.addHandler(fh)
        logger.info("Logging to: %s", log_path)

    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_snapshot: bool = False,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action, "is_snapshot": is_snapshot}
    if path is not None:
        extra["path_text"] = str(path)
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Errors
# -------------------------

class MirrorError(Exception):
    """Base class for every error that aborts a run."""


class PathFault(MirrorError):
    """Input, output or snapshot folder is missing, misplaced or unusable."""


class StorageFault(MirrorError):
    """An index transaction or snapshot read/write failed."""


class CorruptSnapshot(StorageFault):
    """The snapshot file exists but is not a readable index snapshot."""


class ScanFault(MirrorError):
    """An entry under the input folder could not be listed or stat'd."""


class CopyFault(MirrorError):
    """A new or changed file could not be copied into the output folder."""


class ConfigError(MirrorError):
    pass


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class RunOptions:
    input_dir: Path
    output_dir: Path
    db_dir: Path
    write: bool = False
    dry_run: bool = False
    ignore: tuple[str, ...] = ()


@dataclass(frozen=True)
class AppConfig:
    input_dir: Path
    output_dir: Path
    db_dir: Path
    log_dir: Optional[Path]
    write: bool
    dry_run: bool
    ignore: tuple[str, ...]
    verbose: bool

    def run_options(self) -> RunOptions:
        return RunOptions(
            input_dir=self.input_dir,
            output_dir=self.output_dir,
            db_dir=self.db_dir,
            write=self.write,
            dry_run=self.dry_run,
            ignore=self.ignore,
        )


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="whatsnew", description="Copy files that are new or changed since the last run.")
    p.add_argument("-i", "--input", required=True, help="Directory to scan.")
    p.add_argument("-o", "--output", required=True, help="Directory to copy new files to.")
    p.add_argument("-w", "--write", action="store_true", help="Save the updated index snapshot at the end of the run.")
    p.add_argument("-d", "--dry-run", action="store_true", help="Report changes without copying anything.")
    p.add_argument("--db-path", type=str, default=None, help="Directory holding index snapshots (default: .).")
    p.add_argument("--log-dir", type=str, default=None, help="Also write a plain log file into this directory.")
    p.add_argument(
        "--ignore",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Gitignore-style pattern (relative to the input folder) to skip. Repeatable.",
    )
    p.add_argument("--config", type=str, default=None, help=f"JSON config file (default: {CONFIG_PATH}).")
    p.add_argument("-v", "--verbose", action="store_true", help="Also log unchanged files and individual copies.")
    return p.parse_args(argv)


def load_config_file(path: Path) -> dict:
    if not path.exists():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        raise ConfigError(f"Could not read config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"Config file must contain a JSON object: {path}")
    return data


def _config_path_value(saved: dict, key: str) -> Optional[Path]:
    value = saved.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise ConfigError(f"Config key '{key}' must be a non-empty string.")
    return Path(value).expanduser()


def build_effective_config(args: argparse.Namespace) -> AppConfig:
    config_path = Path(args.config).expanduser() if args.config else CONFIG_PATH
    saved = load_config_file(config_path)

    saved_ignore = saved.get("ignore", [])
    if not isinstance(saved_ignore, list) or not all(isinstance(p, str) for p in saved_ignore):
        raise ConfigError("Config key 'ignore' must be a list of strings.")

    db_dir = Path(args.db_path).expanduser() if args.db_path else (_config_path_value(saved, "db_path") or Path("."))
    log_dir = Path(args.log_dir).expanduser() if args.log_dir else _config_path_value(saved, "log_dir")

    return AppConfig(
        input_dir=Path(args.input).expanduser(),
        output_dir=Path(args.output).expanduser(),
        db_dir=db_dir,
        log_dir=log_dir,
        write=bool(args.write),
        dry_run=bool(args.dry_run),
        ignore=tuple(saved_ignore) + tuple(args.ignore),
        verbose=bool(args.verbose),
    )


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False


def validate_paths(options: RunOptions) -> RunOptions:
    try:
        input_dir = Path(os.path.abspath(options.input_dir.expanduser()))
        output_dir = Path(os.path.abspath(options.output_dir.expanduser()))
        db_dir = Path(os.path.abspath(options.db_dir.expanduser()))
    except OSError as e:
        raise PathFault(f"Invalid path: {e}") from e

    if not input_dir.is_dir():
        raise PathFault(f"Input folder does not exist or is not a folder: {input_dir}")
    if input_dir == output_dir:
        raise PathFault("Input and output folders must be different.")
    if _is_subpath(output_dir, input_dir):
        raise PathFault("Output folder must NOT be inside input folder (copies would be rescanned).")
    if output_dir.exists() and not output_dir.is_dir():
        raise PathFault(f"Output path exists and is not a folder: {output_dir}")
    if db_dir.exists() and not db_dir.is_dir():
        raise PathFault(f"Database path exists and is not a folder: {db_dir}")

    return replace(options, input_dir=input_dir, output_dir=output_dir, db_dir=db_dir)


# -------------------------
# Size codec
# -------------------------

_SIZE = struct.Struct("<q")


def encode_size(size: int) -> bytes:
    """Pack a file size as 8 little-endian bytes (signed 64-bit)."""
    return _SIZE.pack(size)


def decode_size(data: bytes) -> int:
    return _SIZE.unpack(data)[0]


# -------------------------
# Change index
# -------------------------

_SCHEMA = "CREATE TABLE IF NOT EXISTS entries (path TEXT PRIMARY KEY, size BLOB NOT NULL)"


def snapshot_path(db_dir: Path, input_root: Path) -> Path:
    return db_dir / f"{input_root.name}{SNAPSHOT_SUFFIX}"


class Transaction:
    """Lookup/upsert access to the index inside one open transaction."""

    def __init__(self, conn: sqlite3.Connection):
        self._conn = conn

    def lookup(self, path: str) -> Optional[int]:
        try:
            row = self._conn.execute("SELECT size FROM entries WHERE path = ?", (path,)).fetchone()
        except sqlite3.Error as e:
            raise StorageFault(f"Index lookup failed for '{path}': {e}") from e
        return None if row is None else decode_size(row[0])

    def upsert(self, path: str, size: int) -> None:
        try:
            self._conn.execute(
                "INSERT OR REPLACE INTO entries (path, size) VALUES (?, ?)",
                (path, encode_size(size)),
            )
        except sqlite3.Error as e:
            raise StorageFault(f"Failed to store '{path}' in index: {e}") from e


class ChangeIndex:
    """
    Path -> last-known size, held in a per-run SQLite store.

    The store itself is never durable. Durability comes only from
    load_snapshot() at start-up and flush_snapshot() at the end of a
    writing run. Use ChangeIndex.transient() to get a store whose scratch
    directory is removed when the run ends, whatever the outcome.
    """

    STORE_NAME = "index.sqlite"

    def __init__(self, store_path: Path):
        self.store_path = store_path
        try:
            self._conn = sqlite3.connect(str(store_path), isolation_level=None)
            self._conn.execute(_SCHEMA)
        except sqlite3.Error as e:
            raise StorageFault(f"Could not open index store {store_path}: {e}") from e

    @classmethod
    @contextmanager
    def transient(cls) -> Iterator["ChangeIndex"]:
        try:
            scratch = tempfile.TemporaryDirectory(prefix="whatsnew-")
        except OSError as e:
            raise StorageFault(f"Could not create scratch directory for index: {e}") from e
        with scratch as scratch_dir:
            index = cls(Path(scratch_dir) / cls.STORE_NAME)
            try:
                yield index
            finally:
                index.close()

    def close(self) -> None:
        self._conn.close()

    @contextmanager
    def transaction(self) -> Iterator[Transaction]:
        """Commit on normal exit, roll back if the body raises."""
        try:
            self._conn.execute("BEGIN")
        except sqlite3.Error as e:
            raise StorageFault(f"Could not begin index transaction: {e}") from e
        try:
            yield Transaction(self._conn)
        except BaseException:
            self._rollback()
            raise
        try:
            self._conn.execute("COMMIT")
        except sqlite3.Error as e:
            self._rollback()
            raise StorageFault(f"Could not commit index transaction: {e}") from e

    def _rollback(self) -> None:
        if not self._conn.in_transaction:
            return
        try:
            self._conn.execute("ROLLBACK")
        except sqlite3.Error as e:
            raise StorageFault(f"Could not roll back index transaction: {e}") from e

    def lookup(self, path: str) -> Optional[int]:
        with self.transaction() as txn:
            return txn.lookup(path)

    def upsert(self, path: str, size: int) -> None:
        with self.transaction() as txn:
            txn.upsert(path, size)

    def entries(self) -> list[tuple[str, int]]:
        with self.transaction():
            try:
                rows = self._conn.execute("SELECT path, size FROM entries ORDER BY path").fetchall()
            except sqlite3.Error as e:
                raise StorageFault(f"Failed to read index: {e}") from e
        return [(path, decode_size(size)) for path, size in rows]

    def __len__(self) -> int:
        with self.transaction():
            try:
                return self._conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]
            except sqlite3.Error as e:
                raise StorageFault(f"Failed to count index entries: {e}") from e

    def load_snapshot(self, source: Path) -> int:
        """
        Replay a snapshot written by flush_snapshot() into the store.

        Returns the number of entries loaded. Raises CorruptSnapshot if the
        file is not a snapshot of this format; the store is left as it was.
        """
        try:
            src = sqlite3.connect(f"{source.resolve().as_uri()}?mode=ro", uri=True)
        except (sqlite3.Error, OSError) as e:
            raise CorruptSnapshot(f"Failed to open database file '{source}': {e}") from e
        try:
            version = src.execute("PRAGMA user_version").fetchone()[0]
            if version != SNAPSHOT_VERSION:
                raise CorruptSnapshot(f"'{source}' is not a whatsnew snapshot (format {version})")
            rows = src.execute("SELECT path, size FROM entries").fetchall()
        except sqlite3.Error as e:
            raise CorruptSnapshot(f"Failed to load database file '{source}': {e}") from e
        finally:
            src.close()

        for path, size in rows:
            if not isinstance(path, str) or not isinstance(size, bytes) or len(size) != _SIZE.size:
                raise CorruptSnapshot(f"Malformed entry {path!r} in database file '{source}'")

        with self.transaction():
            try:
                self._conn.executemany("INSERT OR REPLACE INTO entries (path, size) VALUES (?, ?)", rows)
            except sqlite3.Error as e:
                raise StorageFault(f"Failed to replay database file '{source}': {e}") from e
        return len(rows)

    def flush_snapshot(self, destination: Path) -> int:
        """
        Write the whole store to destination, replacing any previous snapshot.

        The copy goes to a temporary file next to destination and is moved
        into place only once complete. Returns the number of entries written.
        """
        tmp: Optional[Path] = None
        try:
            fd, tmp_name = tempfile.mkstemp(prefix=f".{destination.name}.", suffix=".tmp", dir=destination.parent)
            os.close(fd)
            tmp = Path(tmp_name)
            dst = sqlite3.connect(str(tmp))
            try:
                self._conn.backup(dst)
                dst.execute(f"PRAGMA user_version = {SNAPSHOT_VERSION}")
                count = dst.execute("SELECT COUNT(*) FROM entries").fetchone()[0]
                dst.commit()
            finally:
                dst.close()
            os.replace(tmp, destination)
        except (sqlite3.Error, OSError) as e:
            if tmp is not None:
                tmp.unlink(missing_ok=True)
            raise StorageFault(f"Failed to save database file '{destination}': {e}") from e
        return count


# -------------------------
# Ignore + scanning
# -------------------------

class IgnoreMatcher:
    def __init__(self, root: Path, patterns: Iterable[str]):
        self.root = root
        self.spec = GitIgnoreSpec.from_lines(patterns)

    def is_ignored(self, path: Path, is_dir: bool = False) -> bool:
        rel_posix = path.relative_to(self.root).as_posix()
        if is_dir:
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


class ScanObservation(NamedTuple):
    path: Path
    size: int


def _raise_scan_fault(error: OSError) -> None:
    raise ScanFault(f"Cannot read '{error.filename}': {error.strerror or error}") from error


def scan_directory(root: Path, ignore: Optional[IgnoreMatcher] = None) -> Iterator[ScanObservation]:
    """
    Yield every regular file under root, depth-first in sorted name order.

    Directories are descended into but never yielded. Symlinks and special
    files are skipped. The first entry that cannot be read raises ScanFault
    and ends the walk.
    """
    for dirpath, dirnames, filenames in os.walk(root, onerror=_raise_scan_fault):
        current = Path(dirpath)
        dirnames.sort()
        if ignore is not None:
            dirnames[:] = [d for d in dirnames if not ignore.is_ignored(current / d, is_dir=True)]

        for name in sorted(filenames):
            path = current / name
            if ignore is not None and ignore.is_ignored(path):
                continue
            try:
                st = path.lstat()
            except OSError as e:
                raise ScanFault(f"Cannot stat '{path}': {e}") from e
            if stat.S_ISREG(st.st_mode):
                yield ScanObservation(path, st.st_size)


# -------------------------
# Mirroring
# -------------------------

def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def mirror_file(src: Path, input_root: Path, output_root: Path) -> Path:
    """Copy src to the same relative location under output_root. Content only, no metadata."""
    try:
        rel = src.relative_to(input_root)
    except ValueError as e:
        raise PathFault(f"'{src}' is not inside input folder '{input_root}'") from e

    dst = output_root / rel
    try:
        ensure_parent(dst)
        shutil.copyfile(src, dst)
    except OSError as e:
        raise CopyFault(f"Failed to copy file from '{src}' to '{dst}': {e}") from e
    return dst


# -------------------------
# Classification
# -------------------------

class Outcome(Enum):
    NEW = "new"
    MODIFIED = "modified"
    UNCHANGED = "unchanged"


def classify(stored: Optional[int], observed: int) -> Outcome:
    if stored is None:
        return Outcome.NEW
    if stored != observed:
        return Outcome.MODIFIED
    return Outcome.UNCHANGED


def process_file(
    index: ChangeIndex,
    obs: ScanObservation,
    options: RunOptions,
    logger: logging.Logger,
) -> Outcome:
    """
    Classify one scanned file and act on it inside a single index transaction.

    New/modified files are recorded when options.write is set and copied unless
    options.dry_run is set. A failed copy rolls back that file's index update.
    """
    key = str(obs.path)
    with index.transaction() as txn:
        outcome = classify(txn.lookup(key), obs.size)
        if outcome is Outcome.UNCHANGED:
            logger.debug("unchanged | %s", key)
            return outcome

        log_action(logger, "NEW" if outcome is Outcome.NEW else "UPDATED", key, path=obs.path)
        if options.write:
            txn.upsert(key, obs.size)
        if not options.dry_run:
            dst = mirror_file(obs.path, options.input_dir, options.output_dir)
            log_action(logger, "COPY", f"{obs.path} -> {dst}", path=dst, level=logging.DEBUG)
    return outcome


# -------------------------
# Run
# -------------------------

@dataclass
class RunSummary:
    scanned: int = 0
    new: int = 0
    modified: int = 0
    unchanged: int = 0
    copied: int = 0
    recorded: int = 0
    snapshot_loaded: Optional[Path] = None
    snapshot_saved: Optional[Path] = None

    def record(self, outcome: Outcome, options: RunOptions) -> None:
        self.scanned += 1
        if outcome is Outcome.UNCHANGED:
            self.unchanged += 1
            return
        if outcome is Outcome.NEW:
            self.new += 1
        else:
            self.modified += 1
        if options.write:
            self.recorded += 1
        if not options.dry_run:
            self.copied += 1

    def describe(self) -> str:
        return (
            f"scanned={self.scanned} new={self.new} updated={self.modified} "
            f"unchanged={self.unchanged} copied={self.copied} recorded={self.recorded}"
        )


def run(options: RunOptions, logger: logging.Logger) -> RunSummary:
    options = validate_paths(options)
    summary = RunSummary()

    if not options.dry_run:
        try:
            options.output_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise PathFault(f"Failed to create output directory '{options.output_dir}': {e}") from e

    db_file = snapshot_path(options.db_dir, options.input_dir)
    ignore = IgnoreMatcher(options.input_dir, options.ignore) if options.ignore else None

    with ChangeIndex.transient() as index:
        if db_file.exists():
            loaded = index.load_snapshot(db_file)
            summary.snapshot_loaded = db_file
            log_action(logger, "LOAD_DB", f"{loaded} entries from {db_file}", path=db_file, is_snapshot=True)

        for obs in scan_directory(options.input_dir, ignore):
            summary.record(process_file(index, obs, options, logger), options)

        if options.write:
            try:
                options.db_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise PathFault(f"Failed to create database directory '{options.db_dir}': {e}") from e
            saved = index.flush_snapshot(db_file)
            summary.snapshot_saved = db_file
            log_action(logger, "SAVE_DB", f"{saved} entries to {db_file}", path=db_file, is_snapshot=True)

    log_action(logger, "DONE", summary.describe())
    return summary


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)

    try:
        cfg = build_effective_config(args)
    except ConfigError as e:
        print(f"Config error: {e}", file=sys.stderr)
        return 1

    try:
        logger = setup_logger(cfg.log_dir, verbose=cfg.verbose)
    except OSError as e:
        print(f"Could not open log directory {cfg.log_dir}: {e}", file=sys.stderr)
        return 1
    logger.info("Input : %s", cfg.input_dir)
    logger.info("Output: %s", cfg.output_dir)

    try:
        run(cfg.run_options(), logger)
    except MirrorError as e:
        log_action(logger, "ERROR", str(e), level=logging.ERROR)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
