import logging
import os

import pytest
from pysize import ColorFormatter


@pytest.fixture(autouse=True)
def _drop_cli_log_handlers():
    """main() attaches a stderr handler to the root logger; detach it after each test."""
    yield
    root = logging.getLogger()
    for handler in list(root.handlers):
        if isinstance(handler.formatter, ColorFormatter):
            root.removeHandler(handler)


def _rmtree_iterative(path):
    """Remove a directory tree without recursion (shutil.rmtree recurses per level)."""
    stack = [path]
    while stack:
        current = stack[-1]
        subdirs = []
        with os.scandir(current) as entries:
            for entry in entries:
                if entry.is_dir(follow_symlinks=False):
                    subdirs.append(entry.path)
                else:
                    os.unlink(entry.path)
        if subdirs:
            stack.extend(subdirs)
        else:
            os.rmdir(current)
            stack.pop()


@pytest.fixture(autouse=True)
def _remove_tmp_path_tree(request):
    """Delete each test's tmp_path afterwards so pytest's recursive cleanup never sees deep trees."""
    tmp_path = None
    if "tmp_path" in request.fixturenames:
        tmp_path = request.getfixturevalue("tmp_path")
    yield
    if tmp_path is not None and os.path.isdir(tmp_path):
        _rmtree_iterative(str(tmp_path))
