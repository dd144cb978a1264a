"""Tests for pysize module."""

import argparse
import os
import sys

import pytest
from pysize import (
    FailurePolicy,
    directory_size,
    fan_out,
    format_duration,
    human_size,
    human_size_parts,
    main,
    positive_int,
    total_size,
)


@pytest.fixture
def sample_root(tmp_path):
    """Create a.txt (5 bytes), b.txt (3 bytes) and sub/c.txt (10 bytes)."""
    (tmp_path / "a.txt").write_bytes(b"x" * 5)
    (tmp_path / "b.txt").write_bytes(b"x" * 3)
    sub = tmp_path / "sub"
    sub.mkdir()
    (sub / "c.txt").write_bytes(b"x" * 10)
    return tmp_path


class TestHumanSize:
    """Test human_size and human_size_parts functions."""

    def test_bytes(self):
        assert human_size_parts(18) == ("18", "B")

    def test_kib(self):
        assert human_size_parts(1536) == ("1.5", "KiB")

    def test_gib(self):
        assert human_size(int(1.2 * 1024**3)) == "1.2 GiB"

    def test_zero(self):
        assert human_size(0) == "0 B"

    def test_largest_unit_caps(self):
        assert human_size_parts(1024**6)[1] == "PiB"


class TestFormatDuration:
    """Test format_duration function."""

    def test_milliseconds(self):
        assert format_duration(0.0125) == "12.50ms"

    def test_seconds(self):
        assert format_duration(3.5) == "3.50s"


class TestPositiveInt:
    """Test positive_int argparse type."""

    def test_valid(self):
        assert positive_int("4") == 4

    def test_zero_rejected(self):
        with pytest.raises(argparse.ArgumentTypeError):
            positive_int("0")


class TestFanOut:
    """Test fan_out work scheduling."""

    @staticmethod
    def expand(n):
        """Binary tree of integers below 16."""
        children = [c for c in (n * 2, n * 2 + 1) if c < 16]
        return n, children

    def test_visits_every_item(self):
        results = dict(fan_out(self.expand, [1], FailurePolicy.STRICT, max_workers=2))
        assert sorted(results) == list(range(1, 16))

    def test_single_worker_does_not_deadlock(self):
        results = list(fan_out(self.expand, [1], FailurePolicy.STRICT, max_workers=1))
        assert len(results) == 15

    def test_lenient_drops_failing_subtree(self):
        def worker(n):
            if n == 3:
                raise PermissionError(f"denied {n}")
            return self.expand(n)

        results = dict(fan_out(worker, [1], FailurePolicy.LENIENT, max_workers=4))
        assert 3 not in results
        # 6, 7, 12..15 live below 3
        assert sorted(results) == [1, 2, 4, 5, 8, 9, 10, 11]

    def test_strict_raises_first_error(self):
        def worker(n):
            if n == 5:
                raise FileNotFoundError("gone")
            return self.expand(n)

        with pytest.raises(FileNotFoundError):
            list(fan_out(worker, [1], FailurePolicy.STRICT, max_workers=4))

    def test_non_os_errors_propagate_even_when_lenient(self):
        def worker(n):
            raise RuntimeError("bug")

        with pytest.raises(RuntimeError):
            list(fan_out(worker, [1], FailurePolicy.LENIENT))


class TestTotalSize:
    """Test total_size function."""

    def test_sample_tree(self, sample_root):
        assert total_size(str(sample_root)) == 18

    def test_single_file(self, sample_root):
        assert total_size(str(sample_root / "a.txt")) == 5

    def test_empty_directory(self, tmp_path):
        assert total_size(str(tmp_path)) == 0

    def test_independent_of_worker_count(self, sample_root):
        deep = sample_root / "sub" / "d1" / "d2"
        deep.mkdir(parents=True)
        (deep / "e.bin").write_bytes(b"x" * 100)
        assert total_size(str(sample_root), max_workers=1) == 118
        assert total_size(str(sample_root), max_workers=8) == 118

    def test_missing_path(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            total_size(str(tmp_path / "missing"))

    def test_dangling_entry_fails_whole_call(self, sample_root):
        os.symlink(sample_root / "vanished.txt", sample_root / "sub" / "link")
        with pytest.raises(FileNotFoundError):
            total_size(str(sample_root))

    def test_unreadable_subdirectory_fails_whole_call(self, sample_root, monkeypatch):
        real_scandir = os.scandir

        def flaky_scandir(path):
            if os.path.basename(path) == "sub":
                raise PermissionError(f"Permission denied: '{path}'")
            return real_scandir(path)

        monkeypatch.setattr(os, "scandir", flaky_scandir)
        with pytest.raises(PermissionError):
            total_size(str(sample_root))


class TestDirectorySize:
    """Test directory_size function."""

    def test_sums_nested_files(self, sample_root):
        assert directory_size(str(sample_root)) == 18

    def test_symlinks_not_followed(self, sample_root):
        os.symlink(sample_root / "a.txt", sample_root / "sub" / "link")
        assert directory_size(str(sample_root)) == 18

    def test_deeper_than_recursion_limit(self, tmp_path):
        leaf = os.path.join(str(tmp_path), *["a"] * 1200)
        # os.makedirs recurses once per level; build the chain iteratively.
        d = os.path.dirname(leaf)
        while not os.path.isdir(d):
            d = os.path.dirname(d)
        for part in os.path.relpath(leaf, d).split(os.sep):
            d = os.path.join(d, part)
            os.mkdir(d)
        with open(os.path.join(leaf, "f"), "wb") as f:
            f.write(b"xyz")
        assert directory_size(str(tmp_path)) == total_size(str(tmp_path)) == 3


class TestMain:
    """Test the pysize command line."""

    def test_prints_total_and_time(self, sample_root, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["pysize", str(sample_root)])
        main()
        out = capsys.readouterr().out.splitlines()
        assert out[0] == "Total size: 18 B"
        assert out[1].startswith("Time taken: ")

    def test_usage_without_path(self, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["pysize"])
        main()
        assert capsys.readouterr().out.startswith("usage:")

    def test_usage_with_two_paths(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["pysize", str(tmp_path), str(tmp_path)])
        main()
        out = capsys.readouterr().out
        assert out.startswith("usage:")
        assert "Total size" not in out

    def test_unknown_option_prints_usage(self, sample_root, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["pysize", "--bogus", str(sample_root)])
        main()
        out = capsys.readouterr().out
        assert out.startswith("usage:")
        assert "Total size" not in out

    def test_error_reported_and_time_still_printed(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setattr(sys, "argv", ["pysize", str(tmp_path / "missing")])
        main()
        captured = capsys.readouterr()
        assert captured.err.startswith("Error: ")
        assert "Total size" not in captured.out
        assert captured.out.startswith("Time taken: ")
