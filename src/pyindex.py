#!/usr/bin/env python3
"""
pyindex - Gitignore-Aware Directory Indexer.

Walks a directory tree in parallel and builds an immutable tree of files and
directories with their aggregate sizes. Directories excluded by a .gitignore
are collapsed into a single leaf carrying their total size. The tree is saved
as JSON and can be searched by fuzzy name matching.
"""

import argparse
import json
import logging
import os
import stat
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterator

import pathspec

from pysize import (
    FailurePolicy,
    configure_logging,
    directory_size,
    fan_out,
    format_duration,
    human_size,
    positive_int,
)

logger = logging.getLogger(__name__)

DEFAULT_IGNORE_FILE = ".gitignore"
DEFAULT_OUTPUT = "file_tree.json"
DEFAULT_QUERY = "example"


class NodeType(Enum):
    """Enumeration of indexed node kinds (values are the serialized tags)."""

    FILE = "File"
    DIRECTORY = "Directory"
    IGNORED_DIRECTORY = "IgnoredDirectory"


def lossy_name(name: str) -> str:
    """Replace undecodable bytes in a file name with U+FFFD."""
    return os.fsencode(name).decode("utf-8", errors="replace")


@dataclass(frozen=True)
class FileNode:
    """An immutable node of the indexed tree.

    Attributes:
        name (str):
            Base name of the entry.
        size (int):
            Size in bytes. Directories hold the sum of their children,
            ignored directories the sum of everything below them.
        node_type (NodeType):
            FILE, DIRECTORY or IGNORED_DIRECTORY.
        children (tuple[FileNode, ...]):
            Child nodes, only ever non-empty for DIRECTORY.
        path (str | None):
            Full path of an IGNORED_DIRECTORY, None for every other kind.

    """

    name: str
    size: int
    node_type: NodeType
    children: tuple["FileNode", ...] = ()
    path: str | None = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "children", tuple(self.children))
        if self.size < 0:
            raise ValueError(f"Negative size for {self.name!r}: {self.size}")
        if self.children and self.node_type is not NodeType.DIRECTORY:
            raise ValueError(f"{self.node_type.value} node {self.name!r} cannot have children")
        if self.node_type is NodeType.DIRECTORY:
            children_size = sum(child.size for child in self.children)
            if self.size != children_size:
                raise ValueError(
                    f"Directory {self.name!r} has size {self.size}, "
                    f"children sum to {children_size}"
                )
        if (self.path is not None) != (self.node_type is NodeType.IGNORED_DIRECTORY):
            raise ValueError(f"Only ignored directories carry a path ({self.name!r})")

    @classmethod
    def file(cls, name: str, size: int) -> "FileNode":
        return cls(name=name, size=size, node_type=NodeType.FILE)

    @classmethod
    def directory(cls, name: str, children: list["FileNode"]) -> "FileNode":
        """Build a directory whose size is the sum of ``children``."""
        return cls(
            name=name,
            size=sum(child.size for child in children),
            node_type=NodeType.DIRECTORY,
            children=tuple(children),
        )

    @classmethod
    def ignored(cls, path: str, size: int) -> "FileNode":
        return cls(
            name=os.path.basename(os.path.normpath(path)) or path,
            size=size,
            node_type=NodeType.IGNORED_DIRECTORY,
            path=path,
        )

    @property
    def label(self) -> str:
        """Identity string: the full path for ignored directories, else the name."""
        if self.node_type is NodeType.IGNORED_DIRECTORY:
            return self.path
        return self.name

    def walk(self) -> Iterator[tuple[tuple[str, ...], "FileNode"]]:
        """
        Traverse the tree in pre-order.

        Yields:
            tuple:
                ``(parts, node)`` where ``parts`` holds the labels from this
                node down to and including ``node``.

        """
        stack = [((self.label,), self)]
        while stack:
            parts, node = stack.pop()
            yield parts, node
            for child in reversed(node.children):
                stack.append((parts + (child.label,), child))

    def _fields(self) -> dict[str, Any]:
        return {
            "name": self.label,
            "size": self.size,
            "node_type": self.node_type.value,
            "children": [],
        }

    def to_dict(self) -> dict[str, Any]:
        """Serialize the subtree; depth is only limited by memory."""
        data = self._fields()
        stack = [(self, data)]
        while stack:
            node, node_data = stack.pop()
            for child in node.children:
                child_data = child._fields()
                node_data["children"].append(child_data)
                stack.append((child, child_data))
        return data

    @classmethod
    def _from_fields(cls, data: dict[str, Any], children: list["FileNode"]) -> "FileNode":
        node_type = NodeType(data["node_type"])
        if node_type is NodeType.IGNORED_DIRECTORY:
            if children:
                raise ValueError(f"Ignored directory {data['name']!r} cannot have children")
            return cls.ignored(data["name"], data["size"])
        return cls(
            name=data["name"],
            size=data["size"],
            node_type=node_type,
            children=tuple(children),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileNode":
        """
        Rebuild a node (and its subtree) from its serialized form.

        Raises:
            ValueError: If the node type is unknown or the data breaks a tree
                invariant.
            KeyError: If a required field is missing.

        """
        built: dict[int, FileNode] = {}
        stack = [(data, False)]
        while stack:
            item, expanded = stack.pop()
            children = item.get("children", [])
            if not expanded:
                stack.append((item, True))
                stack.extend((child, False) for child in children)
                continue
            nodes = [built.pop(id(child)) for child in children]
            built[id(item)] = cls._from_fields(item, nodes)
        return built[id(data)]

    def iter_json(self) -> Iterator[str]:
        """
        Yield the subtree as JSON text, formatted like ``json.dump(..., indent=2)``.

        Nodes are expanded from an explicit stack, so arbitrarily deep trees
        can be written.
        """
        stack: list[str | tuple[FileNode, int]] = [(self, 0)]
        while stack:
            item = stack.pop()
            if isinstance(item, str):
                yield item
                continue
            node, depth = item
            indent = "  " * depth
            inner = "  " * (depth + 1)
            yield (
                "{\n"
                f"{inner}\"name\": {json.dumps(node.label)},\n"
                f"{inner}\"size\": {node.size},\n"
                f"{inner}\"node_type\": {json.dumps(node.node_type.value)},\n"
                f"{inner}\"children\": "
            )
            if not node.children:
                yield f"[]\n{indent}}}"
                continue
            yield "[\n"
            child_indent = "  " * (depth + 2)
            pending: list[str | tuple[FileNode, int]] = []
            for i, child in enumerate(node.children):
                pending.append(child_indent)
                pending.append((child, depth + 2))
                pending.append(",\n" if i < len(node.children) - 1 else "\n")
            pending.append(f"{inner}]\n{indent}}}")
            stack.extend(reversed(pending))


def dump_tree(node: FileNode, destination: str) -> None:
    """Write ``node`` as pretty-printed JSON, replacing ``destination``."""
    # Serialized before opening so a failure leaves the old file intact.
    text = "".join(node.iter_json())
    with open(destination, "w", encoding="utf-8") as f:
        f.write(text)


def load_tree(source: str) -> FileNode:
    """
    Read a tree written by ``dump_tree``.

    Raises:
        ValueError: If the file is not a valid tree, including trees nested
            deeper than the ``json`` parser accepts (roughly a few hundred
            levels, depending on the interpreter).

    """
    with open(source, encoding="utf-8") as f:
        try:
            data = json.load(f)
        except RecursionError as e:
            raise ValueError(f"{source} is nested too deeply to parse") from e
    return FileNode.from_dict(data)


def _read_ignore_file(ignore_path: str) -> pathspec.PathSpec | None:
    """Compile one ignore file, or return None when it is absent or unusable."""
    try:
        with open(ignore_path, encoding="utf-8", errors="replace") as f:
            lines = f.read().splitlines()
    except (FileNotFoundError, NotADirectoryError):
        return None
    except OSError as e:
        logger.warning(f"Cannot read {ignore_path}, ignoring it: {e}")
        return None

    try:
        return pathspec.GitIgnoreSpec.from_lines(lines)
    except ValueError as e:
        logger.warning(f"Malformed patterns in {ignore_path}, ignoring it: {e}")
        return None


class IgnoreRules:
    """
    Gitignore rules in force for one directory level.

    The rules are a stack of layers, one per ignore file, each scoped to the
    directory holding the file. Deeper layers take precedence, so a negated
    pattern in a subdirectory can re-include what a parent excluded.
    """

    def __init__(self, layers: tuple[tuple[str, pathspec.PathSpec], ...] = ()):
        self._layers = layers

    @classmethod
    def empty(cls) -> "IgnoreRules":
        return cls()

    @classmethod
    def load(
        cls,
        directory: str,
        parent: "IgnoreRules | None" = None,
        filename: str = DEFAULT_IGNORE_FILE,
    ) -> "IgnoreRules":
        """
        Load the ignore file found directly in ``directory``.

        Args:
            directory (str):
                Directory whose ignore file is read. Its patterns are
                matched against paths relative to it.
            parent (IgnoreRules | None):
                Rules to stack the new layer on (None for a standalone set).
            filename (str):
                Name of the ignore file.

        Returns:
            IgnoreRules:
                The combined rules. Without a usable ignore file this is
                ``parent`` itself, or an empty set.

        """
        base = os.path.abspath(directory)
        inherited = parent._layers if parent is not None else ()
        if inherited and inherited[-1][0] == base:
            return parent

        spec = _read_ignore_file(os.path.join(base, filename))
        if spec is None:
            return parent if parent is not None else cls()
        return cls(inherited + ((base, spec),))

    def __bool__(self) -> bool:
        return bool(self._layers)

    def __repr__(self) -> str:
        return f"IgnoreRules({[base for base, _ in self._layers]!r})"

    def matches(self, path: str, is_directory: bool) -> bool:
        """Return whether ``path`` is excluded by these rules."""
        target = os.path.abspath(path)
        ignored = False
        for base, spec in self._layers:
            relative = os.path.relpath(target, base)
            if relative == os.curdir or relative.split(os.sep, 1)[0] == os.pardir:
                continue
            relative = relative.replace(os.sep, "/")
            if is_directory:
                relative += "/"
            result = spec.check_file(relative)
            if result.include is not None:
                ignored = result.include
        return ignored


@dataclass(frozen=True)
class _IndexTask:
    """One directory waiting to be indexed, with the rules of its parent."""

    path: str
    rules: IgnoreRules
    ignored: bool = False


@dataclass
class _Listing:
    """What indexing one directory produced, before its subtree is assembled."""

    name: str
    files: list[FileNode] = field(default_factory=list)
    subdirs: list[str] = field(default_factory=list)


class Indexer:
    """
    Parallel, lenient tree builder.

    Args:
        inherit (bool):
            Stack each directory's ignore rules on its parent's (git
            semantics). When False every level only sees its own ignore file.
        ignore_filename (str):
            Name of the per-directory ignore file.
        max_workers (int | None):
            Number of scanning threads (None for the default).

    """

    policy = FailurePolicy.LENIENT

    def __init__(
        self,
        inherit: bool = True,
        ignore_filename: str = DEFAULT_IGNORE_FILE,
        max_workers: int | None = None,
    ):
        self.inherit = inherit
        self.ignore_filename = ignore_filename
        self.max_workers = max_workers

    def _rules_for(self, directory: str, inherited: IgnoreRules | None) -> IgnoreRules:
        parent = inherited if self.inherit else None
        return IgnoreRules.load(directory, parent=parent, filename=self.ignore_filename)

    def _scan(self, task: _IndexTask) -> tuple[FileNode | _Listing, list[_IndexTask]]:
        """Index one directory: its files now, its subdirectories as new tasks."""
        if task.ignored:
            return FileNode.ignored(lossy_name(task.path), directory_size(task.path)), []

        rules = self._rules_for(task.path, task.rules)
        listing = _Listing(name=lossy_name(os.path.basename(task.path)))
        subtasks = []
        with os.scandir(task.path) as it:
            for entry in it:
                try:
                    is_dir = entry.is_dir()
                    size = None if is_dir else entry.stat().st_size
                except OSError as e:
                    logger.debug(f"Dropping {entry.path}: {e}")
                    continue
                if is_dir:
                    listing.subdirs.append(entry.path)
                    subtasks.append(
                        _IndexTask(
                            path=entry.path,
                            rules=rules,
                            ignored=rules.matches(entry.path, is_directory=True),
                        )
                    )
                else:
                    listing.files.append(FileNode.file(lossy_name(entry.name), size))
        return listing, subtasks

    def index(self, path: str, inherited_rules: IgnoreRules | None = None) -> FileNode:
        """
        Build the tree rooted at ``path``.

        Args:
            path (str):
                File or directory to index.
            inherited_rules (IgnoreRules | None):
                Rules in force where ``path`` lives. They decide whether the
                root itself is ignored and, with inheritance on, seed the
                rules of the whole tree.

        Returns:
            FileNode:
                A FILE node for a file, an IGNORED_DIRECTORY node when the
                root is ignored, otherwise the DIRECTORY tree.

        Raises:
            OSError: If the root cannot be read. Failures below the root only
                drop the affected entries.

        """
        st = os.stat(path)
        root_name = lossy_name(os.path.basename(os.path.normpath(os.path.abspath(path))))
        if not stat.S_ISDIR(st.st_mode):
            return FileNode.file(root_name or path, st.st_size)

        rules = inherited_rules if inherited_rules is not None else IgnoreRules.empty()
        root_task = _IndexTask(
            path=path,
            rules=rules,
            ignored=rules.matches(path, is_directory=True),
        )
        if root_task.ignored:
            return FileNode.ignored(lossy_name(path), directory_size(path))

        # The root listing runs here so that its failure is fatal.
        root_listing, subtasks = self._scan(root_task)
        root_listing.name = root_name or lossy_name(os.path.abspath(path))

        results: dict[str, FileNode | _Listing] = {path: root_listing}
        for task, result in fan_out(self._scan, subtasks, self.policy, self.max_workers):
            results[task.path] = result
        return self._assemble(path, results)

    def _assemble(self, path: str, results: dict[str, FileNode | _Listing]) -> FileNode:
        """Turn the per-directory results into nodes, deepest directories first."""
        built: dict[str, FileNode] = {}
        stack = [(path, False)]
        while stack:
            current, expanded = stack.pop()
            listing = results[current]
            if not expanded:
                stack.append((current, True))
                stack.extend(
                    (subdir, False)
                    for subdir in listing.subdirs
                    if isinstance(results.get(subdir), _Listing)
                )
                continue
            children = list(listing.files)
            for subdir in listing.subdirs:
                result = results.get(subdir)
                if result is None:
                    continue
                if isinstance(result, FileNode):
                    children.append(result)
                else:
                    children.append(built.pop(subdir))
            built[current] = FileNode.directory(listing.name, children)
        return built[path]


def index(
    path: str,
    inherited_rules: IgnoreRules | None = None,
    *,
    inherit: bool = True,
    ignore_filename: str = DEFAULT_IGNORE_FILE,
    max_workers: int | None = None,
) -> FileNode:
    """Index ``path`` into a FileNode tree (see ``Indexer.index``)."""
    indexer = Indexer(
        inherit=inherit,
        ignore_filename=ignore_filename,
        max_workers=max_workers,
    )
    return indexer.index(path, inherited_rules)


def fuzzy_score(query: str, candidate: str) -> int | None:
    """
    Score ``candidate`` against ``query`` as an ordered subsequence.

    Matching is smart-case: case is ignored unless the query contains an
    uppercase letter.
    Consecutive matched characters and matches at the start of a word earn
    bonuses; skipped characters and long candidates cost points.

    Returns:
        int | None:
            The score, or None when ``query`` is not a subsequence of
            ``candidate``. An empty query scores 0.

    """
    if not query:
        return 0
    if query == query.lower():
        query_folded = query.casefold()
        candidate_folded = candidate.casefold()
    else:
        query_folded = query
        candidate_folded = candidate

    score = 0
    prev_idx = -1
    run = 0
    for needle in query_folded:
        idx = candidate_folded.find(needle, prev_idx + 1)
        if idx < 0:
            return None
        if idx == prev_idx + 1:
            run += 1
            score += 20 + min(16, run * 4)
        else:
            run = 0
            score -= min(40, (idx - prev_idx - 1) * 2)
        if idx == 0 or candidate_folded[idx - 1] in "/_-. ":
            score += 35
        prev_idx = idx

    score -= len(candidate_folded) // 5
    return score


def fuzzy_search(root: FileNode, query: str, limit: int | None = None) -> list[str]:
    """
    Find the nodes below ``root`` whose label fuzzily matches ``query``.

    Args:
        root (FileNode):
            Tree to search. The root itself is not a candidate.
        query (str):
            Characters to look for, in order.
        limit (int | None):
            Maximum number of results (None for all).

    Returns:
        list[str]:
            Paths relative to ``root``, components joined by '/', in
            pre-order traversal order.

    """
    results = []
    for parts, node in root.walk():
        if len(parts) == 1:
            continue
        if fuzzy_score(query, node.label) is None:
            continue
        results.append("/".join(parts[1:]))
        if limit is not None and len(results) >= limit:
            break
    return results


def main() -> None:
    """
    Main entry point for the pyindex tool.

    Indexes the given folder, saves the tree as JSON, prints a summary and
    runs a fuzzy search over the result.
    """
    parser = argparse.ArgumentParser(
        description="Index a folder into a JSON size tree, honoring .gitignore files.",
    )
    parser.add_argument(
        "paths",
        nargs="*",
        metavar="folder_path",
        help="Folder to index (extra paths are ignored)",
    )
    parser.add_argument(
        "-o",
        "--output",
        default=DEFAULT_OUTPUT,
        help=f"File the JSON tree is written to (default: {DEFAULT_OUTPUT})",
    )
    parser.add_argument(
        "-q",
        "--query",
        default=DEFAULT_QUERY,
        help=f"Fuzzy search query run on the indexed tree (default: {DEFAULT_QUERY})",
    )
    parser.add_argument(
        "--per-level-ignores",
        action="store_true",
        help="Apply each ignore file to its own directory level only",
    )
    parser.add_argument(
        "--ignore-file",
        default=DEFAULT_IGNORE_FILE,
        help=f"Name of the per-directory ignore file (default: {DEFAULT_IGNORE_FILE})",
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
    # Unknown options are ignored like extra folder paths.
    args, _ = parser.parse_known_args()

    configure_logging(args.verbose)

    if not args.paths:
        parser.print_usage()
        return

    folder_path = args.paths[0]
    root_rules = IgnoreRules.load(folder_path, filename=args.ignore_file)

    start = time.perf_counter()
    try:
        root = index(
            folder_path,
            root_rules,
            inherit=not args.per_level_ignores,
            ignore_filename=args.ignore_file,
            max_workers=args.workers,
        )
    except OSError:
        logger.exception(f"Failed to index {folder_path}")
        sys.exit(1)
    duration = time.perf_counter() - start

    try:
        dump_tree(root, args.output)
    except OSError:
        logger.exception(f"Failed to write {args.output}")
        sys.exit(1)

    print(f"File tree has been indexed and saved to {args.output}")
    print(f"Time taken to index: {format_duration(duration)}")
    print(f"Total size: {human_size(root.size)}")

    results = fuzzy_search(root, args.query)
    print(f"Fuzzy search results for '{args.query}': {results}")


if __name__ == "__main__":
    main()
