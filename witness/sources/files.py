"""File source — turns filesystem notifications into debounced triggers.

``watchfiles.watch()`` is a blocking generator, so it runs on a dedicated
daemon thread.  The thread filters every changed path and bridges accepted
changes into the asyncio ``TriggerChannel`` via ``send_threadsafe()``.

Filtering, in order:

1. extension allow-list (exact, case-sensitive, compared without the dot)
2. VCS ignore: anything inside a ``.git`` directory, then
   ``git check-ignore <path>`` (0 = ignored, 1 = not ignored).  If git is
   missing or answers anything else the path is *not* ignored.

After a trigger is emitted, every further change is discarded for the
debounce window, measured from the emission and extended by watchfiles'
batching delay (a change from inside the window may be delivered after it).
"""

from __future__ import annotations

import asyncio
import subprocess
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable

import watchfiles
from watchfiles import Change

from witness.channel import TriggerSender
from witness.config import FileOptions
from witness.exceptions import ConfigError, WatchPathError
from witness.logging import get_logger

log = get_logger(__name__)

MUTATING_CHANGES = frozenset({Change.added, Change.modified, Change.deleted})

# watchfiles groups raw notifications: yield once nothing new arrived for
# _STEP_MS, or after _GROUP_MS at most.
_STEP_MS = 20
_GROUP_MS = 50
# Longest delay between a change on disk and its batch reaching us.
_BATCH_LATENCY = (_GROUP_MS + _STEP_MS) / 1000


class FilterReason(str, Enum):
    """Why a file change did not trigger execution."""

    WRONG_EXTENSION = "wrong_extension"
    VCS_IGNORED = "vcs_ignored"


class FileFilter:
    """Decides whether a changed path should trigger execution."""

    def __init__(
        self,
        extensions: set[str] | None = None,
        respect_vcs_ignore: bool = True,
        git: str = "git",
    ) -> None:
        self._extensions = frozenset(extensions) if extensions is not None else None
        self._respect_vcs_ignore = respect_vcs_ignore
        self._git = git

    @classmethod
    def from_options(cls, options: FileOptions) -> "FileFilter":
        return cls(
            extensions=options.extensions,
            respect_vcs_ignore=options.respect_vcs_ignore,
        )

    def check(self, path: Path) -> FilterReason | None:
        """Return ``None`` if *path* passes, else the reason it was rejected."""
        reason = self.check_extension(path)
        if reason is None and self._respect_vcs_ignore:
            reason = self.check_vcs_ignore(path)
        return reason

    def check_extension(self, path: Path) -> FilterReason | None:
        if self._extensions is None:
            return None
        extension = path.suffix[1:]
        if extension and extension in self._extensions:
            return None
        return FilterReason.WRONG_EXTENSION

    def check_vcs_ignore(self, path: Path) -> FilterReason | None:
        if self._inside_git_dir(path):
            return FilterReason.VCS_IGNORED

        try:
            result = subprocess.run(
                [self._git, "check-ignore", str(path)],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                check=False,
            )
        except OSError as exc:
            log.warning("git_unavailable", git=self._git, error=str(exc))
            return None

        if result.returncode == 0:
            return FilterReason.VCS_IGNORED
        if result.returncode != 1:
            log.warning("git_check_ignore_failed", path=str(path), exit_code=result.returncode)
        return None

    @staticmethod
    def _inside_git_dir(path: Path) -> bool:
        return any(part == ".git" for part in path.parts)


class FileWatcher:
    """Recursively watches root paths and emits filtered, debounced triggers.

    Usage::

        watcher = FileWatcher(options, channel.sender())
        watcher.start(asyncio.get_running_loop())
    """

    def __init__(
        self,
        options: FileOptions,
        sender: TriggerSender,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not options.paths:
            raise ConfigError("file watcher needs at least one path")
        for path in options.paths:
            if not path.exists():
                raise WatchPathError(path, "no such file or directory")

        self._paths = list(options.paths)
        self._debounce = options.debounce
        self._filter = FileFilter.from_options(options)
        self._sender = sender
        self._clock = clock
        self._quiet_until = float("-inf")
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self.error: str | None = None  # set if the worker thread died
        self.failed: asyncio.Event | None = None

    # ---------------------------------------------------------------------------
    # Public API
    # ---------------------------------------------------------------------------

    def start(self, loop: asyncio.AbstractEventLoop) -> None:
        """Spawn the worker thread.  *loop* is the loop owning the channel.

        Raises ``WatchPathError`` if a root path disappeared since
        construction.  A later crash of the worker sets ``failed``.
        """
        if self._thread is not None:
            return
        for path in self._paths:
            if not path.exists():
                raise WatchPathError(path, "no such file or directory")
        self._loop = loop
        self.failed = asyncio.Event()
        self._sender.bind_loop(loop)
        for path in self._paths:
            log.info("watching_path", path=str(path))
        self._thread = threading.Thread(
            target=self._run, name="witness-file-watcher", daemon=True
        )
        self._thread.start()

    def stop(self, timeout: float | None = 5.0) -> None:
        """Ask the worker thread to finish and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def paths(self) -> list[Path]:
        return list(self._paths)

    def handle_changes(self, changes: Iterable[tuple[Change, str]]) -> bool:
        """Filter and debounce one batch of raw changes.

        Returns True if a trigger was emitted for this batch.
        """
        emitted = False
        for change, raw_path in sorted(changes, key=lambda item: item[1]):
            if self._clock() < self._quiet_until:
                log.debug("file_change_debounced", path=raw_path)
                continue
            if change not in MUTATING_CHANGES:
                continue

            path = Path(raw_path)
            reason = self._filter.check(path)
            if reason is not None:
                log.info("ignoring_modification", path=raw_path, reason=reason.value)
                continue

            log.info("file_trigger", path=raw_path, change=change.name)
            self._sender.send_threadsafe()
            emitted = True
            # skip everything else for the debounce window plus the batching delay
            self._quiet_until = self._clock() + self._debounce
            if self._debounce > 0:
                self._quiet_until += _BATCH_LATENCY
        return emitted

    # ---------------------------------------------------------------------------
    # Worker thread
    # ---------------------------------------------------------------------------

    def _run(self) -> None:
        try:
            for changes in watchfiles.watch(
                *self._paths,
                watch_filter=None,
                debounce=_GROUP_MS,
                step=_STEP_MS,
                stop_event=self._stop_event,
                recursive=True,
                raise_interrupt=False,
            ):
                self.handle_changes(changes)
        except Exception as exc:
            if self._loop is not None and self._loop.is_closed():
                # the program is exiting underneath us
                log.debug("file_watcher_loop_closed", error=str(exc))
            else:
                self.error = str(exc)
                log.error("file_watcher_crashed", error=str(exc))
                self._signal_failed()
        finally:
            self._sender.close_threadsafe()
            log.debug("file_watcher_stopped")

    def _signal_failed(self) -> None:
        if self._loop is None or self.failed is None:
            return
        try:
            self._loop.call_soon_threadsafe(self.failed.set)
        except RuntimeError:
            # loop already closed
            pass
