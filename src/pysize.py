#!/usr/bin/env python3
"""
pysize - Parallel Disk Usage Total.

Computes the total byte size of a file or directory tree, scanning
directories concurrently on a bounded thread pool. Every entry counts: there
is no ignore-file awareness, and any unreadable entry fails the whole
computation.
"""

import argparse
import logging
import os
import stat
import sys
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from enum import Enum
from typing import Callable, Iterable, Iterator, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class FailurePolicy(Enum):
    """How a parallel walk reacts when one of its tasks fails.

    STRICT aborts the whole walk with the first error, LENIENT drops the
    failing subtree and keeps going.
    """

    STRICT = "strict"
    LENIENT = "lenient"


class ColorFormatter(logging.Formatter):
    """
    Custom logging formatter that adds ANSI color codes to log messages.

    This formatter applies color coding based on log levels for better
    readability in terminal output.
    """

    COLORS = {
        logging.DEBUG: "\033[90m",  # Gray
        logging.INFO: "\033[32m",  # Green
        logging.WARNING: "\033[33m",  # Yellow
        logging.ERROR: "\033[31m",  # Red
        logging.CRITICAL: "\033[41m",  # Red background
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        """
        Format the log record with colors.

        Args:
            record (logging.LogRecord):
                The log record to format.

        Returns:
            str:
                The formatted log message with ANSI color codes.

        """
        color = self.COLORS.get(record.levelno, "")
        message = super().format(record)
        if color:
            message = f"{color}{message}{self.RESET}"
        return message


def configure_logging(verbose: bool = False) -> None:
    """Attach the colored stderr handler to the root logger."""
    handler = logging.StreamHandler()
    handler.setFormatter(ColorFormatter("%(levelname)s: %(message)s"))
    root = logging.getLogger()
    for existing in list(root.handlers):
        if isinstance(existing.formatter, ColorFormatter):
            root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def human_size_parts(size: float) -> tuple[str, str]:
    """
    Convert a size in bytes to human-readable format with a binary unit.

    Args:
        size (int | float):
            Size in bytes.

    Returns:
        tuple[str, str]:
            Tuple of (formatted_size, unit) where unit is one of B, KiB, MiB,
            GiB, TiB, PiB. Byte counts are whole numbers, larger units carry
            one decimal.

    Examples:
        >>> human_size_parts(18)
        ('18', 'B')
        >>> human_size_parts(1536)
        ('1.5', 'KiB')

    """
    units = ["B", "KiB", "MiB", "GiB", "TiB", "PiB"]
    i = 0
    size_f = float(size)
    while size_f >= 1024 and i < len(units) - 1:
        size_f /= 1024
        i += 1
    if i == 0:
        return f"{int(size_f)}", units[i]
    return f"{size_f:.1f}", units[i]


def human_size(size: int) -> str:
    """Format a byte count as e.g. '1.2 GiB'."""
    return " ".join(human_size_parts(size))


def format_duration(seconds: float) -> str:
    """
    Format an elapsed wall-clock time.

    Durations below one second are shown in milliseconds.

    Examples:
        >>> format_duration(0.0125)
        '12.50ms'
        >>> format_duration(3.5)
        '3.50s'

    """
    if seconds < 1:
        return f"{seconds * 1000:.2f}ms"
    return f"{seconds:.2f}s"


def default_workers() -> int:
    """Worker count used when none is requested (same rule as ThreadPoolExecutor)."""
    return min(32, (os.cpu_count() or 1) + 4)


def fan_out(
    worker: Callable[[T], tuple[R, Iterable[T]]],
    items: Iterable[T],
    policy: FailurePolicy,
    max_workers: int | None = None,
) -> Iterator[tuple[T, R]]:
    """
    Run ``worker`` over ``items`` and over every item the workers report back.

    Each call returns ``(result, more_items)``; ``more_items`` are scheduled on
    the same pool. The calling thread owns the queue of pending tasks and does
    all scheduling, so workers never wait on each other and the pool size
    bounds the number of threads regardless of how wide the tree is.

    Args:
        worker (Callable):
            Task body, typically "scan one directory".
        items (Iterable):
            Initial work items.
        policy (FailurePolicy):
            STRICT re-raises the first ``OSError`` after cancelling pending
            tasks; LENIENT logs the failure and drops that item.
        max_workers (int | None):
            Pool size (None for ``default_workers()``).

    Yields:
        tuple:
            ``(item, result)`` for every successful task, in completion order.

    """
    if max_workers is None:
        max_workers = default_workers()
    logger.debug(f"Walking with {max_workers} workers ({policy.value})")

    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        pending = {executor.submit(worker, item): item for item in items}
        try:
            while pending:
                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    item = pending.pop(future)
                    try:
                        result, more = future.result()
                    except OSError as e:
                        if policy is FailurePolicy.STRICT:
                            raise
                        logger.debug(f"Skipping {item}: {e}")
                        continue
                    for child in more:
                        pending[executor.submit(worker, child)] = child
                    yield item, result
        finally:
            for future in pending:
                future.cancel()


def _scan_directory(path: str) -> tuple[int, list[str]]:
    """Sum the non-directory entries of ``path`` and list its subdirectories."""
    files_size = 0
    subdirs = []
    with os.scandir(path) as it:
        for entry in it:
            if entry.is_dir():
                subdirs.append(entry.path)
            else:
                # Follows symlinks: a dangling link raises here.
                files_size += entry.stat().st_size
    return files_size, subdirs


def total_size(path: str, max_workers: int | None = None) -> int:
    """
    Compute the total size in bytes of a file or directory tree.

    Args:
        path (str):
            File or directory to measure. Symlinks are followed.
        max_workers (int | None):
            Number of scanning threads (None for the default).

    Returns:
        int:
            Sum of the lengths of every file reachable from ``path``.

    Raises:
        OSError: If ``path`` or any entry below it cannot be read. Nothing
            is summed partially.

    """
    st = os.stat(path)
    if not stat.S_ISDIR(st.st_mode):
        return st.st_size

    total = 0
    for _, files_size in fan_out(
        _scan_directory, [path], FailurePolicy.STRICT, max_workers
    ):
        total += files_size
    return total


def directory_size(path: str) -> int:
    """
    Sequentially sum every regular file below ``path``.

    Symlinks are not followed and contribute nothing. Any error aborts the
    summation.
    """
    total = 0
    pending = [path]
    while pending:
        with os.scandir(pending.pop()) as it:
            for entry in it:
                if entry.is_dir(follow_symlinks=False):
                    pending.append(entry.path)
                elif entry.is_file(follow_symlinks=False):
                    total += entry.stat(follow_symlinks=False).st_size
    return total


def positive_int(value: str) -> int:
    """argparse type for worker counts."""
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError(f"expected a positive integer, got {value}")
    return number


def main() -> None:
    """
    Main entry point for the pysize tool.

    Prints the total size of the given folder and the time it took. Errors
    are reported on stderr without changing the exit status.
    """
    parser = argparse.ArgumentParser(
        description="Compute the total size of a folder using parallel scanning.",
    )
    parser.add_argument(
        "paths",
        nargs="*",
        metavar="folder_path",
        help="Folder (or file) to measure",
    )
    parser.add_argument(
        "-w",
        "--workers",
        type=positive_int,
        default=None,
        help="Number of scanning threads (default: CPU count + 4, at most 32)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )
    # Unknown options count as extra arguments rather than argparse errors.
    args, extra = parser.parse_known_args()

    configure_logging(args.verbose)

    if len(args.paths) + len(extra) != 1:
        parser.print_usage()
        return

    start = time.perf_counter()
    try:
        size = total_size(args.paths[0], max_workers=args.workers)
    except OSError as e:
        print(f"Error: {e}", file=sys.stderr)
    else:
        print(f"Total size: {human_size(size)}")
    print(f"Time taken: {format_duration(time.perf_counter() - start)}")


if __name__ == "__main__":
    main()
