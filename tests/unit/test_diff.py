"""Tests for the chunked diff streamer, driven by a fake diff tool."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from tmdlkit.models.errors import InvalidArgumentError
from tmdlkit.service.diff import (
    FAILURE_PREFIX,
    TRUNCATION_MARK,
    DiffStreamer,
    chunk_lines,
    fit_line,
)
from tmdlkit.settings import Settings


@pytest.fixture
def docs(tmp_path: Path) -> tuple[Path, Path]:
    old, new = tmp_path / "old.tmdl", tmp_path / "new.tmdl"
    old.write_text("model A\n", encoding="utf-8")
    new.write_text("model B\n", encoding="utf-8")
    return old, new


def _assert_well_formed(chunks: list[str], budget: int = 1024) -> None:
    for chunk in chunks:
        assert chunk.endswith("\n")
        assert len(chunk.encode("utf-8")) <= budget


class TestChunking:
    def test_lines_are_packed(self) -> None:
        chunks = list(chunk_lines(["a\n", "b"], budget=16))
        assert chunks == ["a\nb\n"]

    def test_lines_never_split(self) -> None:
        lines = [f"line {i}\n" for i in range(10)]
        chunks = list(chunk_lines(lines, budget=20))
        _assert_well_formed(chunks, budget=20)
        assert "".join(chunks) == "".join(lines)
        for chunk in chunks:
            assert all(line.startswith("line ") for line in chunk.splitlines())

    def test_empty(self) -> None:
        assert list(chunk_lines([])) == []

    def test_fit_line_truncates_on_character_boundary(self) -> None:
        line = fit_line("é" * 20, budget=16)
        assert line == "é" * 6 + TRUNCATION_MARK
        assert len(line.encode("utf-8")) == 16

    def test_fit_line_short(self) -> None:
        assert fit_line("abc", budget=16) == "abc\n"


class TestDiffStreamer:
    def test_output_is_chunked(self, fake_diff: list[str], docs: tuple[Path, Path]) -> None:
        streamer = DiffStreamer([*fake_diff, "lines", "100"])
        chunks = list(streamer.stream(*docs))
        assert len(chunks) > 1
        _assert_well_formed(chunks)
        text = "".join(chunks)
        assert text.count("\n") == 100
        assert text.startswith("+line 0000 ")
        assert FAILURE_PREFIX not in text

    def test_identical_documents(self, fake_diff: list[str], docs: tuple[Path, Path]) -> None:
        assert list(DiffStreamer([*fake_diff, "same"]).stream(*docs)) == []

    def test_paths_are_appended(self, fake_diff: list[str], docs: tuple[Path, Path]) -> None:
        chunks = list(DiffStreamer([*fake_diff, "paths"]).stream(*docs))
        assert chunks == [f"{docs[0]}\n{docs[1]}\n"]

    def test_long_line_truncated(self, fake_diff: list[str], docs: tuple[Path, Path]) -> None:
        chunks = list(DiffStreamer([*fake_diff, "long"]).stream(*docs))
        assert len(chunks) == 1
        _assert_well_formed(chunks)
        assert chunks[0].endswith(TRUNCATION_MARK)

    def test_failure_becomes_final_chunk(
        self, fake_diff: list[str], docs: tuple[Path, Path]
    ) -> None:
        chunks = list(DiffStreamer([*fake_diff, "fail"]).stream(*docs))
        assert chunks[0] == "partial output\n"
        assert chunks[-1].startswith(f"{FAILURE_PREFIX} ")
        assert "exited with code 2" in chunks[-1]
        assert "fatal: cannot compare" in chunks[-1]

    def test_missing_tool(self, docs: tuple[Path, Path], tmp_path: Path) -> None:
        streamer = DiffStreamer([str(tmp_path / "no-such-diff")])
        chunks = list(streamer.stream(*docs))
        assert len(chunks) == 1
        assert chunks[0].startswith(f"{FAILURE_PREFIX} could not start")

    def test_timeout(self, fake_diff: list[str], docs: tuple[Path, Path]) -> None:
        streamer = DiffStreamer([*fake_diff, "sleep", "30"], timeout=0.5)
        started = time.monotonic()
        chunks = list(streamer.stream(*docs))
        assert time.monotonic() - started < 10
        assert chunks[-1] == f"{FAILURE_PREFIX} diff timed out after 0.5s\n"
        assert "never reached" not in "".join(chunks)

    def test_cancelled(self, fake_diff: list[str], docs: tuple[Path, Path]) -> None:
        cancel = threading.Event()
        cancel.set()
        streamer = DiffStreamer([*fake_diff, "sleep", "30"])
        started = time.monotonic()
        chunks = list(streamer.stream(*docs, cancel=cancel))
        assert time.monotonic() - started < 10
        assert chunks == [f"{FAILURE_PREFIX} diff cancelled\n"]

    def test_close_stops_process(self, fake_diff: list[str], docs: tuple[Path, Path]) -> None:
        stream = DiffStreamer([*fake_diff, "endless"]).stream(*docs)
        first = next(stream)
        assert first.startswith("+zzz")
        started = time.monotonic()
        stream.close()
        assert time.monotonic() - started < 10

    def test_custom_chunk_size(self, fake_diff: list[str], docs: tuple[Path, Path]) -> None:
        chunks = list(DiffStreamer([*fake_diff, "lines", "10"], chunk_bytes=128).stream(*docs))
        _assert_well_formed(chunks, budget=128)
        assert len(chunks) == 5


class TestConfiguration:
    def test_empty_argv(self) -> None:
        with pytest.raises(InvalidArgumentError):
            DiffStreamer([])

    def test_chunk_size_too_small(self) -> None:
        with pytest.raises(InvalidArgumentError, match="at least"):
            DiffStreamer(chunk_bytes=8)

    def test_from_settings(self) -> None:
        settings = Settings(
            _env_file=None,
            diff_command="diff -u --label 'old file'",
            diff_timeout_seconds=5,
            diff_chunk_bytes=512,
        )
        streamer = DiffStreamer.from_settings(settings)
        assert streamer.argv == ["diff", "-u", "--label", "old file"]
        assert streamer.timeout == 5
        assert streamer.chunk_bytes == 512
