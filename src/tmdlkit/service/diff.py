"""Chunked unified diff between two documents, computed by an external process."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import tempfile
import threading
import time
from collections.abc import Iterable, Iterator, Sequence
from contextlib import closing
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from tmdlkit.models.errors import (
    ExternalToolError,
    InvalidArgumentError,
    OperationCancelledError,
    TmdlError,
)
from tmdlkit.settings import Settings

logger = logging.getLogger("tmdlkit.diff")

DEFAULT_DIFF_ARGV = ("git", "--no-pager", "diff", "--no-index", "-U0")
DEFAULT_CHUNK_BYTES = 1024
MIN_CHUNK_BYTES = 16
TRUNCATION_MARK = "…\n"
FAILURE_PREFIX = "[diff]"

# Exit codes of a diff tool: 0 identical, 1 differences found.
_OK_EXIT_CODES = (0, 1)
_WATCH_INTERVAL = 0.05


def fit_line(line: str, budget: int) -> str:
    """Terminate *line* with a newline and truncate it to *budget* UTF-8 bytes."""
    if not line.endswith("\n"):
        line += "\n"
    encoded = line.encode("utf-8")
    if len(encoded) <= budget:
        return line
    keep = budget - len(TRUNCATION_MARK.encode("utf-8"))
    return encoded[:keep].decode("utf-8", errors="ignore") + TRUNCATION_MARK


def chunk_lines(lines: Iterable[str], budget: int = DEFAULT_CHUNK_BYTES) -> Iterator[str]:
    """Pack whole lines into chunks of at most *budget* UTF-8 bytes.

    Every chunk ends with a newline; a line is never split across chunks.
    """
    pending: list[str] = []
    size = 0
    for raw in lines:
        line = fit_line(raw, budget)
        length = len(line.encode("utf-8"))
        if pending and size + length > budget:
            yield "".join(pending)
            pending, size = [], 0
        pending.append(line)
        size += length
    if pending:
        yield "".join(pending)


def _kill_group(proc: subprocess.Popen[str]) -> None:
    """Kill *proc* and every process it spawned (it leads its own session)."""
    if proc.poll() is not None:
        return
    try:
        if hasattr(os, "killpg"):
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        pass


@dataclass
class _Run:
    failure: TmdlError | None = None


class DiffStreamer:
    """Streams the output of a line-oriented diff tool as bounded chunks.

    The tool is run as ``argv + [old, new]``.  Nothing is raised for tool
    problems: a failure, a timeout or a cancellation ends the stream with a
    chunk starting with ``[diff]``.
    """

    def __init__(
        self,
        argv: Sequence[str] = DEFAULT_DIFF_ARGV,
        timeout: float = 30.0,
        chunk_bytes: int = DEFAULT_CHUNK_BYTES,
    ) -> None:
        if not argv:
            raise InvalidArgumentError("Diff command must not be empty")
        if chunk_bytes < MIN_CHUNK_BYTES:
            raise InvalidArgumentError(f"chunk_bytes must be at least {MIN_CHUNK_BYTES}")
        self.argv = list(argv)
        self.timeout = timeout
        self.chunk_bytes = chunk_bytes

    @classmethod
    def from_settings(cls, settings: Settings) -> DiffStreamer:
        return cls(
            argv=settings.diff_argv,
            timeout=settings.diff_timeout_seconds,
            chunk_bytes=settings.diff_chunk_bytes,
        )

    def stream(
        self,
        old: Path | str,
        new: Path | str,
        cancel: threading.Event | None = None,
    ) -> Iterator[str]:
        """Yield diff chunks lazily.  Closing the generator stops the process."""
        run = _Run()
        lines = self._lines(old, new, cancel, run)
        with closing(lines):
            yield from chunk_lines(lines, self.chunk_bytes)
        if run.failure is not None:
            yield from chunk_lines([f"{FAILURE_PREFIX} {run.failure}"], self.chunk_bytes)

    # -- process handling ----------------------------------------------------

    def _lines(
        self,
        old: Path | str,
        new: Path | str,
        cancel: threading.Event | None,
        run: _Run,
    ) -> Iterator[str]:
        argv = [*self.argv, os.fspath(old), os.fspath(new)]
        with tempfile.TemporaryFile() as stderr:
            try:
                proc = subprocess.Popen(
                    argv,
                    stdout=subprocess.PIPE,
                    stderr=stderr,
                    stdin=subprocess.DEVNULL,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    start_new_session=True,
                )
            except OSError as exc:
                run.failure = ExternalToolError(f"could not start '{argv[0]}': {exc}")
                logger.warning("Diff failed: %s", run.failure)
                return

            stop = threading.Event()
            watcher = threading.Thread(
                target=self._watch, args=(proc, cancel, stop, run), daemon=True
            )
            watcher.start()
            try:
                assert proc.stdout is not None
                for line in proc.stdout:
                    if cancel is not None and cancel.is_set():
                        run.failure = OperationCancelledError("diff cancelled")
                        break
                    yield line
                else:
                    returncode = proc.wait()
                    if run.failure is None and returncode not in _OK_EXIT_CODES:
                        run.failure = ExternalToolError(
                            f"'{argv[0]}' exited with code {returncode}"
                            + _stderr_tail(stderr)
                        )
            finally:
                stop.set()
                _kill_group(proc)
                proc.wait()
                if proc.stdout is not None:
                    proc.stdout.close()
                watcher.join()
            if run.failure is not None:
                logger.warning("Diff of %s and %s: %s", old, new, run.failure)

    def _watch(
        self,
        proc: subprocess.Popen[str],
        cancel: threading.Event | None,
        stop: threading.Event,
        run: _Run,
    ) -> None:
        deadline = time.monotonic() + self.timeout
        while not stop.wait(_WATCH_INTERVAL):
            if cancel is not None and cancel.is_set():
                run.failure = OperationCancelledError("diff cancelled")
            elif time.monotonic() >= deadline:
                run.failure = ExternalToolError(f"diff timed out after {self.timeout:g}s")
            else:
                continue
            _kill_group(proc)
            return


def _stderr_tail(stderr: IO[bytes]) -> str:
    stderr.seek(0)
    text = stderr.read().decode("utf-8", errors="replace").strip()
    if not text:
        return ""
    return ": " + text.splitlines()[-1]
