"""Path helpers and the list of paths that snapshots leave out."""

from __future__ import annotations

import functools
import logging
import os
import posixpath
import re
import stat
from dataclasses import dataclass
from typing import Iterable, Iterator

logger = logging.getLogger(__name__)

ROOT_DIR = "/"
KANIKO_DIR = "/kaniko"
MOUNTINFO_PATH = "/proc/self/mountinfo"


class NotSymlinkError(OSError):
    """Raised when a path that should be a symlink is something else."""

    def __init__(self, path: str = "") -> None:
        super().__init__(f"not a symlink: {path}" if path else "not a symlink")
        self.path = path


@dataclass(frozen=True)
class IgnoreListEntry:
    """A path left out of snapshots; ``prefix_match_only`` spares the path itself."""

    path: str
    prefix_match_only: bool = False


def default_ignore_list() -> list[IgnoreListEntry]:
    """The entries every ignore list starts from."""
    return [
        IgnoreListEntry(KANIKO_DIR, False),
        # There is no telling whether /etc/mtab was mounted or came from the base image.
        IgnoreListEntry("/etc/mtab", False),
        # apt keys are added there only for the duration of a command.
        IgnoreListEntry("/tmp/apt-key-gpghome", True),
    ]


def _clean(path: str) -> str:
    if path == "":
        return "."
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def _split(path: str) -> tuple[str, str]:
    index = path.rfind("/")
    return path[: index + 1], path[index + 1 :]


def _join(*parts: str) -> str:
    joined = "/".join(part for part in parts if part)
    return _clean(joined) if joined else ""


def _class_char(pattern: str, index: int) -> tuple[str, int]:
    if index >= len(pattern) or pattern[index] in "-]":
        raise ValueError(f"syntax error in pattern {pattern!r}")
    if pattern[index] == "\\":
        index += 1
        if index >= len(pattern):
            raise ValueError(f"syntax error in pattern {pattern!r}")
    return pattern[index], index + 1


@functools.lru_cache(maxsize=1024)
def _component_regex(pattern: str) -> re.Pattern[str]:
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        char = pattern[i]
        if char == "*":
            out.append("[^/]*")
            i += 1
        elif char == "?":
            out.append("[^/]")
            i += 1
        elif char == "\\":
            if i + 1 >= n:
                raise ValueError(f"syntax error in pattern {pattern!r}")
            out.append(re.escape(pattern[i + 1]))
            i += 2
        elif char == "[":
            i += 1
            negate = i < n and pattern[i] == "^"
            if negate:
                i += 1
            ranges: list[str] = []
            count = 0
            while True:
                if i >= n:
                    raise ValueError(f"syntax error in pattern {pattern!r}")
                if pattern[i] == "]" and count:
                    i += 1
                    break
                low, i = _class_char(pattern, i)
                high = low
                if i < n and pattern[i] == "-":
                    high, i = _class_char(pattern, i + 1)
                count += 1
                if low <= high:
                    ranges.append(f"{re.escape(low)}-{re.escape(high)}")
            if negate:
                out.append("[^" + "".join(ranges) + "]")
            elif ranges:
                out.append("[" + "".join(ranges) + "]")
            else:
                out.append("(?!)")
        else:
            out.append(re.escape(char))
            i += 1
    return re.compile("".join(out), re.DOTALL)


def _match_component(pattern: str, name: str) -> bool:
    return _component_regex(pattern).fullmatch(name) is not None


def has_filepath_prefix(path: str, prefix: str, prefix_match_only: bool = False) -> bool:
    """Whether ``path`` lies at or below ``prefix``, whose parts may hold wildcards."""
    prefix_parts = _clean(prefix).split("/")
    path_parts = _clean(path).split("/", len(prefix_parts))
    if len(path_parts) < len(prefix_parts):
        return False
    if prefix_match_only and len(path_parts) == len(prefix_parts):
        return False
    try:
        return all(
            _match_component(pattern, name)
            for pattern, name in zip(prefix_parts, path_parts)
        )
    except ValueError:
        return False


class IgnoreList:
    """The paths a snapshot leaves out, together with declared volumes."""

    def __init__(self, entries: Iterable[IgnoreListEntry] | None = None) -> None:
        self.defaults: list[IgnoreListEntry] = (
            default_ignore_list() if entries is None else list(entries)
        )
        self._entries: list[IgnoreListEntry] = list(self.defaults)
        self.volumes: list[str] = []

    @property
    def entries(self) -> list[IgnoreListEntry]:
        """A copy of the current entries."""
        return list(self._entries)

    def __iter__(self) -> Iterator[IgnoreListEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def add(self, entry: IgnoreListEntry) -> None:
        """Add one entry."""
        self._entries.append(entry)

    def add_volume(self, path: str) -> None:
        """Ignore everything below the volume ``path`` and remember the volume."""
        logger.info("Adding volume %s to ignorelist", path)
        self._entries.append(IgnoreListEntry(path, True))
        self.volumes.append(path)

    def reset(self, detect_filesystem: bool = False, mountinfo_path: str = MOUNTINFO_PATH) -> None:
        """Go back to the defaults, then optionally add the mount points."""
        self._entries = list(self.defaults)
        if detect_filesystem:
            try:
                self.detect_filesystem(mountinfo_path)
            except OSError as exc:
                raise OSError(
                    f"checking filesystem mount paths for ignore list: {exc}"
                ) from exc

    def detect_filesystem(self, mountinfo_path: str = MOUNTINFO_PATH) -> None:
        """Add every mount point named in a mountinfo file, except the root."""
        with open(mountinfo_path, encoding="utf-8") as handle:
            for line in handle:
                fields = line.split(" ")
                if len(fields) < 5:
                    continue
                mount_point = fields[4]
                if mount_point != ROOT_DIR:
                    logger.debug("Adding ignore list entry %s", mount_point)
                    self._entries.append(IgnoreListEntry(mount_point, False))

    def is_ignored(self, path: str) -> bool:
        """Whether ``path`` is at or below an ignored path."""
        return any(
            has_filepath_prefix(path, entry.path, entry.prefix_match_only)
            for entry in self._entries
        )

    def is_exact(self, path: str) -> bool:
        """Whether ``path`` itself is an entry that is not prefix-only."""
        return any(
            not entry.prefix_match_only and entry.path == path for entry in self._entries
        )

    def has_ignored_child(self, path: str) -> bool:
        """Whether some ignored path lies at or below ``path``."""
        return any(
            has_filepath_prefix(entry.path, path, entry.prefix_match_only)
            for entry in self._entries
        )


def parent_directories(path: str, root_dir: str = ROOT_DIR) -> list[str]:
    """All parent directories of ``path`` down to ``root_dir``, outermost first."""
    root = _clean(root_dir)
    current = _clean(path)
    parents: list[str] = []
    while current not in (root, "", "."):
        parent = _clean(_split(current)[0])
        if parent == current:
            break
        parents.insert(0, parent)
        current = parent
    return parents or [root_dir]


def parent_directories_without_leading_slash(path: str) -> list[str]:
    """Parent directories of ``path`` after ``/``, written without a leading slash."""
    parts = _clean(path).split("/")
    paths = [ROOT_DIR]
    current = ""
    for part in parts[:-1]:
        if not part:
            continue
        current = _join(current, part)
        paths.append(current)
    return paths


def _walk(top: str) -> Iterator[str]:
    info = os.lstat(top)
    yield top
    if stat.S_ISDIR(info.st_mode):
        for name in sorted(os.listdir(top)):
            yield from _walk(_join(top, name))


def relative_files(fp: str, root: str, ignore_list: IgnoreList | None = None) -> list[str]:
    """Every file and directory at ``root``/``fp``, as paths relative to ``root``."""
    ignore_list = IgnoreList() if ignore_list is None else ignore_list
    full_path = _join(root, fp)
    logger.debug("Getting files and contents at root %s for %s", root, full_path)
    files = []
    for path in _walk(full_path):
        if ignore_list.is_ignored(path) and not has_filepath_prefix(path, root, False):
            continue
        files.append(os.path.relpath(path, root))
    return files


def filepath_exists(path: str) -> bool:
    """Whether anything, a dangling symlink included, exists at ``path``."""
    try:
        os.lstat(path)
    except FileNotFoundError:
        return False
    except OSError:
        return True
    return True


def is_dest_dir(path: str) -> bool:
    """Whether ``path`` is a directory, judging by its spelling when it is missing."""
    try:
        info = os.stat(path)
    except OSError:
        return path.endswith("/") or path == "."
    return stat.S_ISDIR(info.st_mode)


def _require_symlink(path: str) -> None:
    if not stat.S_ISLNK(os.lstat(path).st_mode):
        raise NotSymlinkError(path)


def get_symlink(path: str) -> str:
    """The target of the symlink at ``path``."""
    _require_symlink(path)
    return os.readlink(path)


def eval_symlink(path: str) -> str:
    """The fully resolved path that the symlink at ``path`` leads to."""
    _require_symlink(path)
    return os.path.realpath(path, strict=True)