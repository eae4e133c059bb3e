# /fs_replicator.py
"""
FS Replicator (no UI)
- Watches a source folder and replays every change into a destination folder.
- Raw notifications are debounced per (path, kind): bursts of duplicates for the
  same path collapse into one action. Deletions use half the window.
- Each coalesced change runs on a worker pool, never on the notification thread.
- Copies, moves and deletes are retried (5 attempts, 1s apart by default).
  A vanished source is not retried; a missing delete target counts as done;
  a rename whose old copy is missing falls back to copying the new path.
- "Changed" notifications on folders are ignored (their children report their own).
- Remembers last settings across restarts via ~/.fs_replicator/config.json
- Optional gitignore-style ignore rules and a one-shot sync on start.
- Styled console output:
  - COPY green
  - DELETE orange
  - retries / warnings yellow
  - errors red
  - file paths white
  - folder paths light brown
- Log file is always plain (no color codes).

Usage
  pip install watchdog pathspec colorama
  fs-replicator --source "/src" --destination "/dst"
  fs-replicator --source "/src" --destination "/dst" --events Created,Changed --initial-sync
"""

from __future__ import annotations

import argparse
import datetime as dt
import errno
import hashlib
import heapq
import itertools
import json
import logging
import os
import shutil
import sys
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Optional

from colorama import init as colorama_init
from pathspec import PathSpec
from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

APP_DIR = Path.home() / ".fs_replicator"
CONFIG_PATH = APP_DIR / "config.json"
LOGGER_NAME = "fs_replicator"

DEBOUNCE_MS = 1000
RETRY_ATTEMPTS = 5
RETRY_BACKOFF_MS = 1000
MAX_WORKERS = 8


# -------------------------
# Console styling
# -------------------------

class Ansi:
    RESET = "\x1b[0m"
    RED = "\x1b[31m"
    GREEN = "\x1b[32m"
    YELLOW = "\x1b[93m"
    ORANGE = "\x1b[38;5;208m"
    CYAN = "\x1b[36m"
    WHITE = "\x1b[97m"
    LIGHT_BROWN = "\x1b[33m"


ACTION_COLORS = {
    "COPY": Ansi.GREEN,
    "MKDIR": Ansi.LIGHT_BROWN,
    "MOVE": Ansi.LIGHT_BROWN,
    "DELETE": Ansi.ORANGE,
    "RETRY": Ansi.YELLOW,
    "SKIP": Ansi.WHITE,
    "SYNC": Ansi.CYAN,
    "WATCH": Ansi.CYAN,
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
        if action and action in base:
            color = Ansi.YELLOW if record.levelno == logging.WARNING else ACTION_COLORS.get(action, "")
            base = base.replace(action, f"{color}{action}{Ansi.RESET}", 1)

        path_text = getattr(record, "path_text", None)
        if path_text and path_text in base:
            pcolor = Ansi.LIGHT_BROWN if getattr(record, "is_dir", False) else Ansi.WHITE
            base = base.replace(path_text, f"{pcolor}{path_text}{Ansi.RESET}")

        return base


def _today_log_name(prefix: str = "replicator") -> str:
    return f"{prefix}_{dt.date.today().isoformat()}.log"


def setup_logger(log_dir: Path) -> logging.Logger:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / _today_log_name()

    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(logging.INFO)
    logger.propagate = False

    if logger.handlers:
        return logger

    colorama_init()

    fmt = "%(asctime)s | %(levelname)s | %(threadName)s | %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    fh = logging.FileHandler(log_path, encoding="utf-8")
    fh.setFormatter(logging.Formatter(fmt=fmt, datefmt=datefmt))
    fh.setLevel(logging.INFO)

    ch = logging.StreamHandler(sys.stdout)
    ch.setLevel(logging.INFO)
    ch.setFormatter(ColorizingFormatter(use_color=_supports_color(sys.stdout), fmt=fmt, datefmt=datefmt))

    logger.addHandler(fh)
    logger.addHandler(ch)

    logger.info("Logging to: %s", log_path)
    return logger


def log_action(
    logger: logging.Logger,
    action: str,
    message: str,
    path: Optional[Path] = None,
    is_dir: Optional[bool] = None,
    level: int = logging.INFO,
) -> None:
    extra = {"action": action}
    if path is not None:
        extra["path_text"] = str(path)
        extra["is_dir"] = bool(is_dir) if is_dir is not None else path.is_dir()
    logger.log(level, f"{action} | {message}", extra=extra)


# -------------------------
# Errors
# -------------------------

class ReplicatorError(Exception):
    """Base exception for the replicator."""


class ValidationError(ReplicatorError, ValueError):
    """A root folder is undefined, relative or malformed."""


class PathMappingError(ReplicatorError, ValueError):
    """A path does not live under the root it is mapped from."""


class NotificationOverflowError(ReplicatorError):
    """The notification backend ran out of buffer space and dropped events."""


# ENOBUFS is what inotify/kqueue style backends report when their queue fills up.
_OVERFLOW_ERRNOS = {errno.ENOBUFS, errno.EOVERFLOW}


# -------------------------
# Change events
# -------------------------

class ChangeKind(Enum):
    CREATED = "Created"
    CHANGED = "Changed"
    RENAMED = "Renamed"
    DELETED = "Deleted"


ALL_KINDS = frozenset(ChangeKind)


def parse_kinds(text: Optional[str]) -> frozenset[ChangeKind]:
    """
    Parse an event mask such as "Created,Deleted".
    None means every kind. Unknown names are skipped.
    """
    if text is None:
        return ALL_KINDS
    by_name = {kind.value.lower(): kind for kind in ChangeKind}
    kinds = set()
    for name in text.split(","):
        kind = by_name.get(name.strip().lower())
        if kind is not None:
            kinds.add(kind)
    return frozenset(kinds)


def format_kinds(kinds: Iterable[ChangeKind]) -> str:
    wanted = set(kinds)
    return ",".join(kind.value for kind in ChangeKind if kind in wanted)


@dataclass(frozen=True)
class ChangeEvent:
    kind: ChangeKind
    path: Path
    previous_path: Optional[Path] = None

    def __post_init__(self) -> None:
        if (self.kind is ChangeKind.RENAMED) != (self.previous_path is not None):
            raise ValueError("previous_path must be set for renames, and only for renames")

    @property
    def debounce_key(self) -> tuple[str, ChangeKind]:
        return (str(self.path), self.kind)


# -------------------------
# Path mapping
# -------------------------

def _normalize(path) -> Path:
    return Path(os.path.abspath(os.fsdecode(os.fspath(path))))


def to_destination(full_source_path, source_root, destination_root) -> Path:
    """
    Map an absolute path under source_root to the same relative location under
    destination_root. The mapping is lexical: links are not followed, so a path
    that no longer exists maps the same way as one that does.
    """
    src = _normalize(full_source_path)
    root = _normalize(source_root)
    try:
        rel = src.relative_to(root)
    except ValueError:
        raise PathMappingError(f"{src} is not under {root}") from None
    return _normalize(destination_root) / rel


def to_source(full_destination_path, source_root, destination_root) -> Path:
    return to_destination(full_destination_path, destination_root, source_root)


def validate_root(path, label: str = "Root") -> Path:
    if path is None:
        raise ValidationError(f"{label} path is undefined.")
    try:
        text = os.fsdecode(os.fspath(path))
    except TypeError:
        raise ValidationError(f"{label} path {path!r} is not a path.") from None
    if not text.strip() or "\x00" in text:
        raise ValidationError(f"{label} path {text!r} is not a valid rooted path.")
    if not os.path.isabs(text):
        raise ValidationError(f"{label} path {text!r} is not absolute.")
    return _normalize(text)


# -------------------------
# Retry
# -------------------------

class ActionKind(Enum):
    COPY = "copy"
    MOVE = "move"
    DELETE = "delete"


class ErrorKind(Enum):
    NOT_FOUND = "not found"
    LOCKED = "locked"
    TRANSIENT = "error"


class Outcome(Enum):
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    EXHAUSTED = "exhausted"
    SKIPPED = "skipped"


def _is_locked_error(exc: BaseException) -> bool:
    if isinstance(exc, PermissionError):
        return True
    winerror = getattr(exc, "winerror", None)
    if winerror in (32, 33):  # ERROR_SHARING_VIOLATION, ERROR_LOCK_VIOLATION
        return True
    err = getattr(exc, "errno", None)
    return err in {errno.EACCES, errno.EPERM, errno.EBUSY}


def classify_error(exc: BaseException) -> ErrorKind:
    if isinstance(exc, FileNotFoundError):
        return ErrorKind.NOT_FOUND
    if _is_locked_error(exc):
        return ErrorKind.LOCKED
    return ErrorKind.TRANSIENT


class RetryExecutor:
    """
    Runs one filesystem action with a fixed number of attempts and a fixed pause
    between them.

    A missing path is never retried. What it means depends on the action:
    the copy source vanished (terminal), the delete target is already gone
    (success), or the move source is gone (the caller falls back to a copy).
    Every other failure is retried; once the attempts are used up the failure is
    logged and EXHAUSTED is returned. Nothing is raised to the caller.
    """

    def __init__(
        self,
        logger: logging.Logger,
        max_attempts: int = RETRY_ATTEMPTS,
        backoff: float = RETRY_BACKOFF_MS / 1000.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.logger = logger
        self.max_attempts = max_attempts
        self.backoff = max(0.0, float(backoff))
        self._sleep = sleep

    def execute(
        self,
        action: Callable[[], None],
        kind: ActionKind,
        description: str,
        path: Optional[Path] = None,
    ) -> Outcome:
        tag = kind.name
        for attempt in range(1, self.max_attempts + 1):
            try:
                action()
                return Outcome.SUCCESS
            except Exception as e:
                reason = classify_error(e)
                if reason is ErrorKind.NOT_FOUND:
                    return self._not_found(kind, description, path, e)

                if attempt < self.max_attempts:
                    log_action(
                        self.logger,
                        "RETRY",
                        f"{tag} attempt {attempt}/{self.max_attempts} failed ({reason.value}) {description} | {e}",
                        path=path,
                        level=logging.WARNING,
                    )
                    self._sleep(self.backoff)
                    continue

                log_action(
                    self.logger,
                    tag,
                    f"ERROR gave up after {self.max_attempts} attempts ({reason.value}) {description} | {e}",
                    path=path,
                    level=logging.ERROR,
                )
        return Outcome.EXHAUSTED

    def _not_found(self, kind: ActionKind, description: str, path: Optional[Path], error: Exception) -> Outcome:
        if kind is ActionKind.DELETE:
            log_action(self.logger, "DELETE", f"already absent {description}", path=path, level=logging.DEBUG)
            return Outcome.SUCCESS
        if kind is ActionKind.MOVE:
            log_action(self.logger, "MOVE", f"old path missing, copying instead {description}", path=path)
            return Outcome.NOT_FOUND
        log_action(
            self.logger,
            "COPY",
            f"SKIP source vanished {description} | {error}",
            path=path,
            level=logging.WARNING,
        )
        return Outcome.NOT_FOUND


# -------------------------
# Debouncing
# -------------------------

def window_for(kind: ChangeKind, debounce_ms: int = DEBOUNCE_MS) -> float:
    """Debounce window in seconds. Deletions are fast-tracked with half the window."""
    ms = debounce_ms // 2 if kind is ChangeKind.DELETED else debounce_ms
    return ms / 1000.0


@dataclass(order=True)
class _DebounceEntry:
    expiry: float
    seq: int
    key: tuple = field(compare=False)
    event: ChangeEvent = field(compare=False)


class EventDebouncer:
    """
    Delay queue that turns a burst of notifications for one (path, kind) into a
    single dispatch.

    The first offer for a key schedules it; later offers for the same key are
    dropped until the entry expires. Expired entries are handed to a bounded
    worker pool so a slow copy never holds up the notification thread.
    close() stops accepting offers but lets scheduled entries fire.
    """

    def __init__(
        self,
        dispatch: Callable[[ChangeEvent], object],
        logger: logging.Logger,
        debounce_ms: int = DEBOUNCE_MS,
        max_workers: int = MAX_WORKERS,
    ):
        self._dispatch = dispatch
        self.logger = logger
        self.debounce_ms = debounce_ms
        self._entries: dict[tuple, _DebounceEntry] = {}
        self._heap: list[_DebounceEntry] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._closed = False
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="Replicate")
        self._timer = threading.Thread(target=self._run, name="EventDebouncer", daemon=True)
        self._timer.start()

    def offer(self, event: ChangeEvent, window: Optional[float] = None) -> bool:
        if window is None:
            window = window_for(event.kind, self.debounce_ms)
        key = event.debounce_key
        with self._cond:
            if self._closed or key in self._entries:
                return False
            entry = _DebounceEntry(time.monotonic() + window, next(self._seq), key, event)
            self._entries[key] = entry
            heapq.heappush(self._heap, entry)
            self._cond.notify()
        return True

    def pending(self) -> int:
        with self._cond:
            return len(self._entries)

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self, wait: bool = False) -> None:
        with self._cond:
            self._closed = True
            self._cond.notify_all()
        if wait:
            self._timer.join()
            self._executor.shutdown(wait=True)

    def _run(self) -> None:
        while True:
            entry = self._next_due()
            if entry is None:
                break
            self._executor.submit(self._fire, entry.event)
        self._executor.shutdown(wait=False)

    def _next_due(self) -> Optional[_DebounceEntry]:
        with self._cond:
            while True:
                if not self._heap:
                    if self._closed:
                        return None
                    self._cond.wait()
                    continue
                delay = self._heap[0].expiry - time.monotonic()
                if delay <= 0:
                    entry = heapq.heappop(self._heap)
                    del self._entries[entry.key]
                    return entry
                self._cond.wait(delay)

    def _fire(self, event: ChangeEvent) -> None:
        try:
            self._dispatch(event)
        except Exception as e:
            log_action(
                self.logger,
                "WATCH",
                f"ERROR dispatch failed ({event.kind.value}) {event.path} | {e}",
                path=event.path,
                level=logging.ERROR,
            )


# -------------------------
# Filesystem helpers
# -------------------------

def ensure_parent(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def _missing(path: Path) -> FileNotFoundError:
    return FileNotFoundError(errno.ENOENT, os.strerror(errno.ENOENT), str(path))


def copy_tree(src: Path, dst: Path) -> int:
    """
    Recreate src under dst: every folder first, then every file (overwriting).
    Children that disappear mid-copy are skipped; only a missing src is an error.
    """
    if not src.is_dir():
        raise _missing(src)
    dst.mkdir(parents=True, exist_ok=True)
    files: list[Path] = []
    for current, dirnames, filenames in os.walk(src):
        base = Path(current)
        for name in dirnames:
            (dst / (base / name).relative_to(src)).mkdir(parents=True, exist_ok=True)
        files.extend(base / name for name in filenames)
    copied = 0
    for f in files:
        try:
            shutil.copy2(f, dst / f.relative_to(src))
        except FileNotFoundError:
            continue
        copied += 1
    return copied


def _ignore_missing(func, path, exc) -> None:
    # onerror passes an exc_info tuple, onexc the exception itself
    error = exc[1] if isinstance(exc, tuple) else exc
    if isinstance(error, FileNotFoundError):
        return
    raise error


def remove_tree(path: Path) -> None:
    """rmtree that carries on past entries someone else already removed."""
    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=_ignore_missing)
    else:
        shutil.rmtree(path, onerror=_ignore_missing)


def merge_tree(src: Path, dst: Path) -> None:
    """Move the contents of folder src into existing folder dst, then drop src."""
    for child in list(src.iterdir()):
        target = dst / child.name
        if child.is_dir() and not child.is_symlink() and target.is_dir() and not target.is_symlink():
            merge_tree(child, target)
        else:
            os.replace(child, target)
    src.rmdir()


def md5_file(path: Path, chunk_size: int = 1024 * 1024) -> str:
    h = hashlib.md5()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(chunk_size), b""):
            h.update(chunk)
    return h.hexdigest()


def files_match(src: Path, dst: Path) -> bool:
    """Same size and either a close mtime or identical content."""
    try:
        s1, s2 = src.stat(), dst.stat()
        if s1.st_size != s2.st_size:
            return False
        if abs(s1.st_mtime - s2.st_mtime) <= 1.0:
            return True
        return md5_file(src) == md5_file(dst)
    except OSError:
        return False


# -------------------------
# Replication
# -------------------------

class ReplicationEngine:
    """
    Applies one debounced change to the destination tree.

    Keeps nothing between calls: every event maps its paths afresh and runs its
    own retry loop, so the same event can be applied twice with the same result.
    """

    def __init__(
        self,
        source_root: Path,
        destination_root: Path,
        logger: logging.Logger,
        retry: Optional[RetryExecutor] = None,
    ):
        self.source_root = _normalize(source_root)
        self.destination_root = _normalize(destination_root)
        self.logger = logger
        self.retry = retry or RetryExecutor(logger)

    def map(self, source_path: Path) -> Path:
        return to_destination(source_path, self.source_root, self.destination_root)

    def handle(self, event: ChangeEvent) -> Outcome:
        try:
            if event.kind is ChangeKind.CREATED:
                return self.on_created(event.path)
            if event.kind is ChangeKind.CHANGED:
                return self.on_changed(event.path)
            if event.kind is ChangeKind.RENAMED:
                return self.on_renamed(event.previous_path, event.path)
            return self.on_deleted(event.path)
        except PathMappingError as e:
            log_action(self.logger, "SKIP", f"outside source root: {e}", level=logging.WARNING)
            return Outcome.SKIPPED

    def on_created(self, path: Path) -> Outcome:
        src = Path(path)
        dst = self.map(src)
        return self.retry.execute(lambda: self._copy(src, dst), ActionKind.COPY, f"{src} -> {dst}", path=dst)

    def on_changed(self, path: Path) -> Outcome:
        src = Path(path)
        if src.is_dir():
            self.logger.debug("Ignoring folder change: %s", src)
            return Outcome.SKIPPED
        return self.on_created(src)

    def on_renamed(self, old_path: Path, new_path: Path) -> Outcome:
        old_dst = self.map(old_path)
        new_dst = self.map(new_path)
        outcome = self.retry.execute(
            lambda: self._move(old_dst, new_dst),
            ActionKind.MOVE,
            f"{old_dst} -> {new_dst}",
            path=new_dst,
        )
        if outcome is Outcome.NOT_FOUND:
            # The rename may have raced ahead of the original copy.
            return self.on_created(new_path)
        return outcome

    def on_deleted(self, path: Path) -> Outcome:
        dst = self.map(path)
        if dst == self.destination_root:
            log_action(self.logger, "SKIP", f"source root removed, keeping {dst}", path=dst, is_dir=True, level=logging.WARNING)
            return Outcome.SKIPPED
        return self.retry.execute(lambda: self._delete(dst), ActionKind.DELETE, str(dst), path=dst)

    def _copy(self, src: Path, dst: Path) -> None:
        if src.is_dir():
            count = copy_tree(src, dst)
            log_action(self.logger, "MKDIR", f"{src} -> {dst} ({count} files)", path=dst, is_dir=True)
            return
        if not src.exists():
            raise _missing(src)
        ensure_parent(dst)
        shutil.copy2(src, dst)
        log_action(self.logger, "COPY", f"{src} -> {dst}", path=dst, is_dir=False)

    def _move(self, src: Path, dst: Path) -> None:
        if not src.exists() and not src.is_symlink():
            raise _missing(src)
        ensure_parent(dst)
        is_dir = src.is_dir() and not src.is_symlink()
        if is_dir and dst.is_dir() and not dst.is_symlink():
            merge_tree(src, dst)
        elif dst.exists():
            os.replace(src, dst)
        else:
            shutil.move(str(src), str(dst))
        log_action(self.logger, "MOVE", f"{src} -> {dst}", path=dst, is_dir=is_dir)

    def _delete(self, dst: Path) -> None:
        if dst.is_dir() and not dst.is_symlink():
            remove_tree(dst)
            log_action(self.logger, "DELETE", str(dst), path=dst, is_dir=True)
            return
        dst.unlink()
        log_action(self.logger, "DELETE", str(dst), path=dst, is_dir=False)


# -------------------------
# Ignore rules
# -------------------------

class IgnoreMatcher:
    def __init__(self, source_root: Path, patterns: list[str]):
        self.source_root = _normalize(source_root)
        self.spec = PathSpec.from_lines("gitwildmatch", patterns)

    def is_ignored(self, path: Path, is_dir: Optional[bool] = None) -> bool:
        try:
            rel = _normalize(path).relative_to(self.source_root)
        except ValueError:
            return False
        rel_posix = rel.as_posix()
        if rel_posix == ".":
            return False
        if is_dir is None:
            is_dir = Path(path).is_dir()
        if is_dir and not rel_posix.endswith("/"):
            rel_posix += "/"
        return self.spec.match_file(rel_posix)


# -------------------------
# Initial sync
# -------------------------

def full_sync(engine: ReplicationEngine, ignore: Optional[IgnoreMatcher] = None) -> tuple[int, int]:
    """
    Bring the destination in line with the source once: create missing folders,
    copy missing or different files and remove entries the source no longer has.
    Returns (copied, removed).
    """
    logger = engine.logger
    log_action(logger, "SYNC", f"start {engine.source_root} -> {engine.destination_root}")
    copied = removed = 0

    for src in sorted(engine.source_root.rglob("*")):
        try:
            is_dir = src.is_dir()
            if ignore is not None and ignore.is_ignored(src, is_dir=is_dir):
                continue
            dst = engine.map(src)
            if is_dir:
                if not dst.is_dir():
                    dst.mkdir(parents=True, exist_ok=True)
                    log_action(logger, "MKDIR", f"(sync) {dst}", path=dst, is_dir=True)
                continue
            if not src.is_file() or files_match(src, dst):
                continue
            if engine.on_created(src) is Outcome.SUCCESS:
                copied += 1
        except OSError as e:
            log_action(logger, "SYNC", f"ERROR processing {src} | {e}", path=src, level=logging.ERROR)

    if engine.destination_root.is_dir():
        for dst in sorted(engine.destination_root.rglob("*"), reverse=True):
            src = to_source(dst, engine.source_root, engine.destination_root)
            if src.exists() or src.is_symlink() or not (dst.exists() or dst.is_symlink()):
                continue
            if engine.on_deleted(src) is Outcome.SUCCESS:
                removed += 1

    log_action(logger, "SYNC", f"done ({copied} copied, {removed} removed)")
    return copied, removed


# -------------------------
# Watch session
# -------------------------

class ReplicationHandler(FileSystemEventHandler):
    """Forwards watchdog notifications to a WatchSession as ChangeEvents."""

    def __init__(self, session: "WatchSession"):
        super().__init__()
        self.session = session

    @staticmethod
    def _path(raw) -> Path:
        return Path(os.fsdecode(raw))

    def on_created(self, event):
        self.session.notify(ChangeEvent(ChangeKind.CREATED, self._path(event.src_path)))

    def on_modified(self, event):
        self.session.notify(ChangeEvent(ChangeKind.CHANGED, self._path(event.src_path)))

    def on_moved(self, event):
        # Moves synthesized for a renamed folder's children are carried by the folder move.
        if event.is_synthetic:
            return
        self.session.notify(
            ChangeEvent(ChangeKind.RENAMED, self._path(event.dest_path), previous_path=self._path(event.src_path))
        )

    def on_deleted(self, event):
        self.session.notify(ChangeEvent(ChangeKind.DELETED, self._path(event.src_path)))


class WatchSession:
    """
    One source/destination pair being mirrored. Stopped -> Running -> Stopped.

    Roots and the event mask can only be changed while stopped; assignments made
    while running are ignored. Each start() builds a fresh engine and debouncer,
    so a restart is also how a full resync is requested (see initial_sync).
    """

    def __init__(
        self,
        source_path,
        destination_path,
        enabled_kinds: Iterable[ChangeKind] = ALL_KINDS,
        logger: Optional[logging.Logger] = None,
        *,
        debounce_ms: int = DEBOUNCE_MS,
        retry_attempts: int = RETRY_ATTEMPTS,
        retry_backoff_ms: int = RETRY_BACKOFF_MS,
        max_workers: int = MAX_WORKERS,
        ignore_patterns: Optional[list[str]] = None,
        initial_sync: bool = False,
        observer_factory: Callable[[], Observer] = Observer,
    ):
        self._source = validate_root(source_path, "Source")
        self._destination = validate_root(destination_path, "Destination")
        self._kinds = frozenset(enabled_kinds)
        self.logger = logger or logging.getLogger(LOGGER_NAME)
        self.debounce_ms = debounce_ms
        self.retry_attempts = retry_attempts
        self.retry_backoff_ms = retry_backoff_ms
        self.max_workers = max_workers
        self.ignore_patterns = list(ignore_patterns or [])
        self.initial_sync = initial_sync
        self._observer_factory = observer_factory

        self._lock = threading.Lock()
        self._running = False
        self._observer = None
        self._debouncer: Optional[EventDebouncer] = None
        self._ignore: Optional[IgnoreMatcher] = None
        self._previous_excepthook = None

    @classmethod
    def from_config(cls, cfg: "ReplicatorConfig", logger: Optional[logging.Logger] = None, **kwargs) -> "WatchSession":
        return cls(
            cfg.source_dir,
            cfg.destination_dir,
            cfg.events,
            logger,
            debounce_ms=cfg.debounce_ms,
            retry_attempts=cfg.retry_attempts,
            retry_backoff_ms=cfg.retry_backoff_ms,
            max_workers=cfg.max_workers,
            ignore_patterns=list(cfg.ignore_patterns),
            initial_sync=cfg.initial_sync,
            **kwargs,
        )

    @property
    def running(self) -> bool:
        return self._running

    @property
    def source_path(self) -> Path:
        return self._source

    @source_path.setter
    def source_path(self, value) -> None:
        with self._lock:
            if not self._running:
                self._source = validate_root(value, "Source")

    @property
    def destination_path(self) -> Path:
        return self._destination

    @destination_path.setter
    def destination_path(self, value) -> None:
        with self._lock:
            if not self._running:
                self._destination = validate_root(value, "Destination")

    @property
    def enabled_kinds(self) -> frozenset[ChangeKind]:
        return self._kinds

    @enabled_kinds.setter
    def enabled_kinds(self, value: Iterable[ChangeKind]) -> None:
        with self._lock:
            if not self._running:
                self._kinds = frozenset(value)

    def start(self) -> None:
        with self._lock:
            if self._running:
                return
            if not self._source.is_dir():
                raise ValidationError(f"Source folder does not exist or is not a folder: {self._source}")

            retry = RetryExecutor(self.logger, self.retry_attempts, self.retry_backoff_ms / 1000.0)
            engine = ReplicationEngine(self._source, self._destination, self.logger, retry)
            ignore = IgnoreMatcher(self._source, self.ignore_patterns) if self.ignore_patterns else None
            if self.initial_sync:
                full_sync(engine, ignore)

            self._ignore = ignore
            self._debouncer = EventDebouncer(engine.handle, self.logger, self.debounce_ms, self.max_workers)
            observer = self._observer_factory()
            observer.schedule(ReplicationHandler(self), str(self._source), recursive=True)
            self._watch_thread_errors(observer)
            try:
                observer.start()
            except Exception:
                self._restore_excepthook()
                self._debouncer.close()
                self._debouncer = None
                raise
            self._observer = observer
            self._running = True

        log_action(
            self.logger,
            "WATCH",
            f"started {self._source} -> {self._destination} [{format_kinds(self._kinds)}]",
            path=self._source,
            is_dir=True,
        )

    def stop(self, wait: bool = False) -> None:
        """
        Stop delivering notifications. Changes already waiting in the debouncer
        still get applied; pass wait=True to block until they have been.
        """
        with self._lock:
            if not self._running:
                return
            observer, debouncer = self._observer, self._debouncer
            self._observer = None
            self._debouncer = None
            self._running = False

        observer.unschedule_all()
        observer.stop()
        observer.join(timeout=5.0)
        self._restore_excepthook()
        debouncer.close(wait=wait)
        log_action(self.logger, "WATCH", f"stopped {self._source}", path=self._source, is_dir=True)

    def notify(self, event: ChangeEvent) -> bool:
        """Feed one raw notification in. Returns True if it scheduled a new action."""
        debouncer = self._debouncer
        if debouncer is None:
            return False
        scoped = self._scope(event)
        if scoped is None or scoped.kind not in self._kinds:
            return False
        return debouncer.offer(scoped)

    def on_error(self, exc: BaseException) -> None:
        if isinstance(exc, NotificationOverflowError) or getattr(exc, "errno", None) in _OVERFLOW_ERRNOS:
            log_action(
                self.logger,
                "WATCH",
                f"notification buffer overflow, some changes may have been lost (restart to resync) | {exc}",
                level=logging.WARNING,
            )
            return
        log_action(self.logger, "WATCH", f"ERROR notification source failed | {exc}", level=logging.ERROR)

    def _watch_thread_errors(self, observer) -> None:
        """
        watchdog has no error callback: an emitter that raises just dies. Route
        uncaught exceptions from the observer and its emitter threads to on_error.
        """
        previous = threading.excepthook

        def hook(args):
            if args.thread is observer or args.thread in getattr(observer, "emitters", ()):
                self.on_error(args.exc_value)
            else:
                previous(args)

        self._previous_excepthook = previous
        threading.excepthook = hook

    def _restore_excepthook(self) -> None:
        if self._previous_excepthook is not None:
            threading.excepthook = self._previous_excepthook
            self._previous_excepthook = None

    def _scope(self, event: ChangeEvent) -> Optional[ChangeEvent]:
        if event.kind is not ChangeKind.RENAMED:
            return event if self._tracked(event.path) else None
        old_in = self._tracked(event.previous_path)
        new_in = self._tracked(event.path)
        if old_in and new_in:
            return event
        if new_in:
            return ChangeEvent(ChangeKind.CREATED, event.path)
        if old_in:
            return ChangeEvent(ChangeKind.DELETED, event.previous_path)
        return None

    def _tracked(self, path: Path) -> bool:
        try:
            to_destination(path, self._source, self._destination)
        except PathMappingError:
            return False
        return self._ignore is None or not self._ignore.is_ignored(path)


# -------------------------
# Config / CLI
# -------------------------

@dataclass(frozen=True)
class ReplicatorConfig:
    source_dir: Path
    destination_dir: Path
    log_dir: Path = Path(".")
    events: frozenset[ChangeKind] = ALL_KINDS
    debounce_ms: int = DEBOUNCE_MS
    retry_attempts: int = RETRY_ATTEMPTS
    retry_backoff_ms: int = RETRY_BACKOFF_MS
    max_workers: int = MAX_WORKERS
    ignore_patterns: tuple[str, ...] = ()
    initial_sync: bool = False


def parse_args(argv: list[str]) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Replicate changes from one folder to another.")
    p.add_argument("--source", type=str, default=None, help="Folder to watch.")
    p.add_argument("--destination", type=str, default=None, help="Folder to replicate into.")
    p.add_argument("--log-dir", type=str, default=None, help="Directory for log files.")
    p.add_argument("--events", type=str, default=None, help="Comma list of Created,Changed,Renamed,Deleted.")
    p.add_argument("--debounce-ms", type=int, default=None, help="Debounce window (deletions use half).")
    p.add_argument("--retries", type=int, default=None, help="Attempts per filesystem action.")
    p.add_argument("--backoff-ms", type=int, default=None, help="Pause between attempts.")
    p.add_argument("--workers", type=int, default=None, help="Maximum concurrent replications.")
    p.add_argument("--ignore", action="append", default=None, help="Gitignore-style pattern (repeatable).")
    p.add_argument("--initial-sync", action="store_true", default=None, help="Reconcile the trees once on start.")
    return p.parse_args(argv)


def prompt_for_path(label: str, default: Optional[Path] = None) -> Path:
    while True:
        hint = f" [{default}]" if default else ""
        raw = input(f"{label}{hint}: ").strip().strip('"')
        if not raw and default:
            return default
        if raw:
            return Path(raw)
        print("Please enter a non-empty path.")


def load_config_file() -> dict:
    try:
        if CONFIG_PATH.exists():
            return json.loads(CONFIG_PATH.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        pass
    return {}


def save_config_file(cfg: ReplicatorConfig) -> None:
    APP_DIR.mkdir(parents=True, exist_ok=True)
    payload = {
        "source": str(cfg.source_dir),
        "destination": str(cfg.destination_dir),
        "log_dir": str(cfg.log_dir),
        "events": format_kinds(cfg.events),
        "debounce_ms": cfg.debounce_ms,
        "retry_attempts": cfg.retry_attempts,
        "retry_backoff_ms": cfg.retry_backoff_ms,
        "max_workers": cfg.max_workers,
        "ignore": list(cfg.ignore_patterns),
        "initial_sync": cfg.initial_sync,
    }
    CONFIG_PATH.write_text(json.dumps(payload, indent=2), encoding="utf-8")


def _pick(cli_value, saved: dict, key: str, default):
    if cli_value is not None:
        return cli_value
    return saved.get(key, default)


def build_effective_config(args: argparse.Namespace) -> ReplicatorConfig:
    saved = load_config_file()

    saved_source = Path(saved["source"]) if "source" in saved else None
    saved_destination = Path(saved["destination"]) if "destination" in saved else None

    source = Path(args.source) if args.source else saved_source
    destination = Path(args.destination) if args.destination else saved_destination
    log_dir = Path(_pick(args.log_dir, saved, "log_dir", "."))

    if source is None:
        source = prompt_for_path("Source folder", saved_source)
    if destination is None:
        destination = prompt_for_path("Destination folder", saved_destination)

    return ReplicatorConfig(
        source_dir=source,
        destination_dir=destination,
        log_dir=log_dir,
        events=parse_kinds(_pick(args.events, saved, "events", None)),
        debounce_ms=int(_pick(args.debounce_ms, saved, "debounce_ms", DEBOUNCE_MS)),
        retry_attempts=int(_pick(args.retries, saved, "retry_attempts", RETRY_ATTEMPTS)),
        retry_backoff_ms=int(_pick(args.backoff_ms, saved, "retry_backoff_ms", RETRY_BACKOFF_MS)),
        max_workers=int(_pick(args.workers, saved, "max_workers", MAX_WORKERS)),
        ignore_patterns=tuple(_pick(args.ignore, saved, "ignore", ())),
        initial_sync=bool(_pick(args.initial_sync, saved, "initial_sync", False)),
    )


def _is_subpath(child: Path, parent: Path) -> bool:
    try:
        child.relative_to(parent)
        return True
    except ValueError:
        return False


def validate_roots(source: Path, destination: Path) -> tuple[Path, Path]:
    source = validate_root(Path(source).expanduser().resolve(), "Source")
    destination = validate_root(Path(destination).expanduser().resolve(), "Destination")

    if not source.is_dir():
        raise ValidationError(f"Source folder does not exist or is not a folder: {source}")
    if source == destination:
        raise ValidationError("Source and destination folders must be different.")
    if _is_subpath(destination, source):
        raise ValidationError("Destination folder must NOT be inside source folder (would cause loops).")
    if _is_subpath(source, destination):
        raise ValidationError("Source folder must NOT be inside destination folder (would cause confusion).")

    destination.mkdir(parents=True, exist_ok=True)
    return source, destination


# -------------------------
# Main
# -------------------------

def main(argv: Optional[list[str]] = None) -> int:
    args = parse_args(argv if argv is not None else sys.argv[1:])
    cfg = build_effective_config(args)

    logger = setup_logger(cfg.log_dir.expanduser())

    try:
        source, destination = validate_roots(cfg.source_dir, cfg.destination_dir)
        logger.info("Source     : %s", source)
        logger.info("Destination: %s", destination)
        logger.info("Events     : %s", format_kinds(cfg.events) or "(none)")
    except ValidationError as e:
        logger.error("Config error: %s", e)
        return 2

    cfg = replace(cfg, source_dir=source, destination_dir=destination, log_dir=cfg.log_dir.expanduser().resolve())
    try:
        save_config_file(cfg)
        logger.info("Saved config: %s", CONFIG_PATH)
    except OSError as e:
        logger.error("Could not save config: %s", e)

    session = WatchSession.from_config(cfg, logger)
    try:
        session.start()
    except (ValidationError, OSError) as e:
        logger.error("Could not start watching: %s", e)
        return 2

    logger.info("Watching... (Ctrl+C to stop)")
    try:
        while True:
            time.sleep(0.5)
    except KeyboardInterrupt:
        logger.info("Stopping...")
    finally:
        session.stop(wait=True)
        logger.info("Stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
