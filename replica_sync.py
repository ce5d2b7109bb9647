# /replica_sync.py
"""
Replica Sync
- One-way periodic mirror of a source folder onto a replica folder.
- Every pass: create missing directories, copy new/changed files, remove orphans.
- Change detection by SHA-256 content hash (never by timestamp).
- Orphan removal collects every doomed path first, then deletes.
- Convergence check compares entry counts and logs "Synchronization complete".
- Optional gitignore-style rules keep matching paths out of the replica.
- Log file lines: [YYYY-MM-DD HH:MM:SS] <message>, re-opened on every write.
- Console mirror of the log, colored when attached to a terminal.
- SIGINT / SIGTERM finish the current pass, then exit 0.

Usage
  pip install -e .
  replica-sync /src /replica 30 sync.log
  replica-sync /src /replica 30 sync.log --ignore "*.tmp" --ignore "build/"
"""

from __future__ import annotations

import argparse
import hashlib
import logging
import os
import shutil
import signal
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Optional

from colorama import init as colorama_init
from pathspec import PathSpec

LOGGER_NAME = "replica_sync"
LOG_FORMAT = "[%(asctime)s] %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

HASH_CHUNK_SIZE = 1024 * 1024
SLEEP_SLICE_SEC = 0.5

COMPLETE_MESSAGE = "Synchronization complete. All files and directories are synchronized."


# -------------------------
# Session state
# -------------------------

@dataclass
class SyncSession:
    """Mutable flags shared by the driver, the reconciler and the signal handler."""

    changes_made: bool = False
    shutdown_requested: bool = False


@dataclass(frozen=True)
class SyncError:
    path: Optional[Path]
    message: str
    kind: str  # "filesystem" | "error"


@dataclass
class PhaseReport:
    name: str
    changes: list[Path] = field(default_factory=list)
    errors: list[SyncError] = field(default_factory=list)


@dataclass
class PassReport:
    phases: list[PhaseReport] = field(default_factory=list)

    @property
    def changes(self) -> list[Path]:
        return [p for phase in self.phases for p in phase.changes]

    @property
    def errors(self) -> list[SyncError]:
        return [e for phase in self.phases for e in phase.errors]

    @property
    def ok(self) -> bool:
        return not self.errors

    def phase(self, name: str) -> PhaseReport:
        for p in self.phases:
            if p.name == name:
                return p
        raise KeyError(name)


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    CYAN = "\x1b[36m"
    ORANGE = "\x1b[38;5;208m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "REMOVE": Ansi.ORANGE,
    "MKDIR": Ansi.LIGHT_BROWN,
    "DONE": Ansi.CYAN,
}


def _supports_color(stream) -> bool:
    try:
        return hasattr(stream, "isatty") and stream.isatty()
    except (AttributeError, ValueError):
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
        action_color = ACTION_COLORS.get(action, "") if action else ""

        path_text = getattr(record, "path_text", None)
        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if getattr(record, "is_dir", False) else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}{action_color}")

        if not action_color:
            return base
        return f"{action_color}{base}{Ansi.RESET}"


# -------------------------
# Operation log
# -------------------------

class AppendingFileHandler(logging.FileHandler):
    """
    Opens the log file in append mode for every record and closes it again,
    so a rotated or truncated log is picked up on the next write.
    Handler.handle() holds the handler lock around emit(), which keeps lines whole.
    """

    def __init__(self, filename: Path | str, encoding: str = "utf-8"):
        super().__init__(filename, mode="a", encoding=encoding, delay=True)
        self.log_path = Path(filename)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            line = self.format(record) + self.terminator
        except Exception:
            self.handleError(record)
            return
        try:
            with open(self.baseFilename, "a", encoding=self.encoding) as f:
                f.write(line)
        except OSError:
            sys.stderr.write(f"Error: Unable to open log file: {self.log_path}\n")
            sys.stderr.flush()


def setup_logger(
    log_file: Path,
    use_color: Optional[bool] = None,
    name: str = LOGGER_NAME,
) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(logging.INFO)
    logger.propagate = False
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()

    if use_color is None:
        use_color = _supports_color(sys.stdout)
    if use_color:
        colorama_init()

    fh = AppendingFileHandler(log_file)
    fh.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))
    fh.setLevel(logging.INFO)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(ColorizingFormatter(use_color=use_color, fmt=LOG_FORMAT, datefmt=LOG_DATEFMT))

    logger.addHandler(fh)
    logger.addHandler(ch)
    return logger


def log_operation(
    logger: logging.Logger,
    message: str,
    action: Optional[str] = None,
    path: Optional[Path] = None,
    is_dir: bool = False,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action, "is_dir": is_dir}
    if path is not None:
        extra["path_text"] = str(path)
    logger.log(level, message, extra=extra)


# -------------------------
# Hashing + ignore rules
# -------------------------

def sha256_file(path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        while True:
            b = f.read(chunk_size)
            if not b:
                break
            h.update(b)
    return h.hexdigest()


class IgnoreMatcher:
    def __init__(self, patterns: Iterable[str] = ()):
        self.patterns = [p for p in patterns if p.strip()]
        self.spec = PathSpec.from_lines("gitwildmatch", self.patterns)

    def is_ignored(self, rel: Path, is_dir: bool = False) -> bool:
        if not self.patterns:
            return False
        rel_posix = rel.as_posix()
        if is_dir and not rel_posix.endswith("/"):
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


NO_IGNORE = IgnoreMatcher()


# -------------------------
# Reconciliation
# -------------------------

def _record_change(
    logger: logging.Logger,
    session: SyncSession,
    report: PhaseReport,
    message: str,
    action: str,
    path: Path,
    is_dir: bool = False,
) -> None:
    report.changes.append(path)
    session.changes_made = True
    log_operation(logger, message, action=action, path=path, is_dir=is_dir)


def _record_failure(
    logger: logging.Logger,
    report: PhaseReport,
    path: Optional[Path],
    exc: Exception,
) -> None:
    if isinstance(exc, OSError):
        kind, label = "filesystem", "Filesystem error"
    else:
        kind, label = "error", "Error"
    report.errors.append(SyncError(path=path, message=str(exc), kind=kind))
    log_operation(logger, f"{label}: {exc}", path=path, level=logging.ERROR)


def _remove_path(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink()


def sync_replica_root(
    replica: Path,
    logger: logging.Logger,
    session: SyncSession,
) -> PhaseReport:
    report = PhaseReport("replica_root")
    try:
        if not replica.exists():
            replica.mkdir(parents=True)
            _record_change(logger, session, report, f"Created replica directory: {replica}", "MKDIR", replica, is_dir=True)
    except Exception as e:
        _record_failure(logger, report, replica, e)
    return report


def sync_subdirectories(
    source: Path,
    replica: Path,
    logger: logging.Logger,
    session: SyncSession,
    ignore: IgnoreMatcher = NO_IGNORE,
) -> PhaseReport:
    report = PhaseReport("directories")
    try:
        for src_path in source.rglob("*"):
            try:
                if not src_path.is_dir():
                    continue
                rel = src_path.relative_to(source)
                if ignore.is_ignored(rel, is_dir=True):
                    continue

                dst_dir = replica / rel
                if dst_dir.is_dir() and not dst_dir.is_symlink():
                    continue
                if os.path.lexists(dst_dir):
                    # a file or link where the source has a directory
                    _remove_path(dst_dir)
                    _record_change(logger, session, report, f"Removed: {dst_dir}", "REMOVE", dst_dir)

                dst_dir.mkdir(parents=True)
                _record_change(logger, session, report, f"Created directory: {dst_dir}", "MKDIR", dst_dir, is_dir=True)
            except Exception as e:
                _record_failure(logger, report, src_path, e)
    except Exception as e:
        _record_failure(logger, report, source, e)
    return report


def _should_copy(src: Path, dst: Path) -> bool:
    if not os.path.lexists(dst):
        return True
    return sha256_file(src) != sha256_file(dst)


def sync_copy(
    source: Path,
    replica: Path,
    logger: logging.Logger,
    session: SyncSession,
    ignore: IgnoreMatcher = NO_IGNORE,
) -> PhaseReport:
    report = PhaseReport("copy")
    try:
        for src_path in source.rglob("*"):
            try:
                if not src_path.is_file():
                    continue
                rel = src_path.relative_to(source)
                if ignore.is_ignored(rel):
                    continue

                dst_path = replica / rel
                if os.path.lexists(dst_path) and (dst_path.is_symlink() or not dst_path.is_file()):
                    # a directory, link or special file where the source has a regular file
                    is_dir = dst_path.is_dir() and not dst_path.is_symlink()
                    _remove_path(dst_path)
                    _record_change(logger, session, report, f"Removed: {dst_path}", "REMOVE", dst_path, is_dir=is_dir)

                if not _should_copy(src_path, dst_path):
                    continue

                shutil.copyfile(src_path, dst_path)
                _record_change(logger, session, report, f"Copied file: {src_path} to {dst_path}", "COPY", dst_path)
            except Exception as e:
                _record_failure(logger, report, src_path, e)
    except Exception as e:
        _record_failure(logger, report, source, e)
    return report


def find_orphans(source: Path, replica: Path, ignore: IgnoreMatcher = NO_IGNORE) -> list[Path]:
    """
    Replica entries without a source counterpart (or matched by an ignore rule).
    Children of an orphaned directory are folded into that directory.
    """
    candidates: list[Path] = []
    for dst_path in replica.rglob("*"):
        rel = dst_path.relative_to(replica)
        is_dir = dst_path.is_dir() and not dst_path.is_symlink()
        if not (source / rel).exists() or ignore.is_ignored(rel, is_dir=is_dir):
            candidates.append(dst_path)

    doomed = set(candidates)
    return [p for p in candidates if not any(parent in doomed for parent in p.parents)]


def sync_delete(
    source: Path,
    replica: Path,
    logger: logging.Logger,
    session: SyncSession,
    ignore: IgnoreMatcher = NO_IGNORE,
) -> PhaseReport:
    report = PhaseReport("delete")
    try:
        orphans = find_orphans(source, replica, ignore)
    except Exception as e:
        _record_failure(logger, report, replica, e)
        return report

    for dst_path in orphans:
        try:
            is_dir = dst_path.is_dir() and not dst_path.is_symlink()
            _remove_path(dst_path)
            _record_change(logger, session, report, f"Removed: {dst_path}", "REMOVE", dst_path, is_dir=is_dir)
        except Exception as e:
            _record_failure(logger, report, dst_path, e)
    return report


def sync_folders(
    source: Path,
    replica: Path,
    logger: logging.Logger,
    session: SyncSession,
    ignore: IgnoreMatcher = NO_IGNORE,
) -> PassReport:
    """
    Run one reconciliation pass. Phases run in a fixed order and never raise:
    replica root, directories, copy, delete. Failures end up in the report
    and in the log.
    """
    session.changes_made = False
    report = PassReport()

    root = sync_replica_root(replica, logger, session)
    report.phases.append(root)
    if root.errors:
        return report

    report.phases.append(sync_subdirectories(source, replica, logger, session, ignore))
    report.phases.append(sync_copy(source, replica, logger, session, ignore))
    report.phases.append(sync_delete(source, replica, logger, session, ignore))
    return report


# -------------------------
# Convergence check
# -------------------------

def count_entries(root: Path, ignore: IgnoreMatcher = NO_IGNORE) -> int:
    count = 0
    for path in root.rglob("*"):
        is_dir = path.is_dir()
        if not (is_dir or path.is_file()):
            continue
        if ignore.is_ignored(path.relative_to(root), is_dir=is_dir):
            continue
        count += 1
    return count


def check_sync_completion(
    source: Path,
    replica: Path,
    logger: logging.Logger,
    session: SyncSession,
    ignore: IgnoreMatcher = NO_IGNORE,
) -> bool:
    # Count heuristic: equal totals plus a mutating pass reads as converged.
    try:
        source_count = count_entries(source, ignore)
        replica_count = count_entries(replica, ignore)
    except OSError as e:
        log_operation(logger, f"Filesystem error: {e}", level=logging.ERROR)
        return False

    if source_count == replica_count and session.changes_made:
        log_operation(logger, COMPLETE_MESSAGE, action="DONE")
        session.changes_made = False
        return True
    return False


# -------------------------
# Config / CLI
# -------------------------

class ValidationError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    source_dir: Path
    replica_dir: Path
    interval_sec: int
    log_file: Path
    ignore_patterns: tuple[str, ...] = ()
    use_color: Optional[bool] = None


class UsageArgumentParser(argparse.ArgumentParser):
    def error(self, message: str):
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = UsageArgumentParser(
        prog="replica-sync",
        description="Periodically mirror a source folder onto a replica folder.",
    )
    p.add_argument("source_path", help="Folder to mirror (read only).")
    p.add_argument("replica_path", help="Folder kept identical to the source.")
    p.add_argument("interval_seconds", type=int, help="Seconds between synchronization passes.")
    p.add_argument("log_file_path", help="File that receives the operation log.")
    p.add_argument(
        "--ignore",
        action="append",
        default=[],
        metavar="PATTERN",
        help="gitignore-style pattern kept out of the replica (repeatable).",
    )
    p.add_argument("--no-color", action="store_true", help="Plain console output.")
    return p.parse_args(argv)


def build_config(args: argparse.Namespace) -> AppConfig:
    return AppConfig(
        source_dir=Path(args.source_path).expanduser(),
        replica_dir=Path(args.replica_path).expanduser(),
        interval_sec=args.interval_seconds,
        log_file=Path(args.log_file_path).expanduser(),
        ignore_patterns=tuple(args.ignore),
        use_color=False if args.no_color else None,
    )


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.resolve().relative_to(parent.resolve())
        return True
    except ValueError:
        return False


def validate_paths(source: Path, replica: Path) -> None:
    if source.resolve() == replica.resolve():
        raise ValidationError("Source and replica folders must be different.")
    if _is_subpath(replica, source):
        raise ValidationError("Replica folder must NOT be inside source folder (would cause loops).")
    if _is_subpath(source, replica):
        raise ValidationError("Source folder must NOT be inside replica folder (would be removed as an orphan).")


# -------------------------
# Driver
# -------------------------

class SyncDriver:
    def __init__(
        self,
        config: AppConfig,
        logger: logging.Logger,
        session: Optional[SyncSession] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.logger = logger
        self.session = session or SyncSession()
        self.ignore = IgnoreMatcher(config.ignore_patterns)
        self.sleep = sleep
        self.clock = clock

    @property
    def source(self) -> Path:
        return self.config.source_dir

    @property
    def replica(self) -> Path:
        return self.config.replica_dir

    def request_shutdown(self) -> None:
        self.session.shutdown_requested = True

    def _handle_signal(self, signum, frame) -> None:
        self.request_shutdown()

    def install_signal_handlers(self) -> None:
        signal.signal(signal.SIGINT, self._handle_signal)
        signal.signal(signal.SIGTERM, self._handle_signal)

    def validate_source(self) -> bool:
        try:
            exists = self.source.exists()
            is_dir = exists and self.source.is_dir()
        except OSError as e:
            log_operation(self.logger, f"Error: {e}", level=logging.ERROR)
            return False
        if not exists:
            log_operation(self.logger, "Error: Source path does not exist.", level=logging.ERROR)
            return False
        if not is_dir:
            log_operation(self.logger, "Error: Source path is not a directory.", level=logging.ERROR)
            return False
        return True

    def run_once(self) -> PassReport:
        report = sync_folders(self.source, self.replica, self.logger, self.session, self.ignore)
        check_sync_completion(self.source, self.replica, self.logger, self.session, self.ignore)
        return report

    def sleep_time(self, elapsed: float) -> float:
        return max(0.0, self.config.interval_sec - elapsed)

    def _sleep_remaining(self, remaining: float) -> None:
        while remaining > 0 and not self.session.shutdown_requested:
            step = min(SLEEP_SLICE_SEC, remaining)
            self.sleep(step)
            remaining -= step

    def run(self) -> int:
        if not self.validate_source():
            return 1

        log_operation(self.logger, "Starting folder synchronization.")
        log_operation(self.logger, f"Source path: {self.source}", path=self.source, is_dir=True)
        log_operation(self.logger, f"Replica path: {self.replica}", path=self.replica, is_dir=True)
        log_operation(self.logger, f"Synchronization interval: {self.config.interval_sec} seconds")

        while not self.session.shutdown_requested:
            if not self.validate_source():
                log_operation(
                    self.logger,
                    "Source directory has been deleted or is inaccessible. Exiting...",
                    level=logging.ERROR,
                )
                return 1

            start = self.clock()
            self.run_once()
            elapsed = self.clock() - start

            self._sleep_remaining(self.sleep_time(elapsed))

        log_operation(self.logger, "Synchronization stopped.", action="DONE")
        return 0


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)
    cfg = build_config(args)

    logger = setup_logger(cfg.log_file, use_color=cfg.use_color)

    try:
        validate_paths(cfg.source_dir, cfg.replica_dir)
    except ValidationError as e:
        log_operation(logger, f"Error: {e}", level=logging.ERROR)
        return 1

    driver = SyncDriver(cfg, logger)
    driver.install_signal_handlers()
    return driver.run()


if __name__ == "__main__":
    raise SystemExit(main())
