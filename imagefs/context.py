"""The build context and the files its .dockerignore leaves out."""

from __future__ import annotations

import functools
import logging
import os
import posixpath
import re
from dataclasses import dataclass, field
from typing import Iterable

from imagefs.paths import filepath_exists, has_filepath_prefix

logger = logging.getLogger(__name__)

_BOM = "\ufeff"
_ESCAPED = set(".+()|{}$^")


def _clean(path: str) -> str:
    if path == "":
        return "."
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def _dir(path: str) -> str:
    return _clean(path[: path.rfind("/") + 1])


@dataclass(frozen=True)
class _Pattern:
    regex: re.Pattern[str]
    dirs: int
    exclusion: bool


def _pattern_regex(pattern: str) -> str:
    out = ["^"]
    i, n = 0, len(pattern)
    while i < n:
        char = pattern[i]
        i += 1
        if char == "*":
            if i < n and pattern[i] == "*":
                i += 1
                if i < n and pattern[i] == "/":
                    i += 1
                out.append(".*" if i >= n else "(.*/)?")
            else:
                out.append("[^/]*")
        elif char == "?":
            out.append("[^/]")
        elif char == "\\":
            if i >= n:
                raise ValueError(f"syntax error in pattern {pattern!r}")
            out.append(re.escape(pattern[i]))
            i += 1
        elif char in "[]":
            out.append(char)
        elif char == "^" and out[-1] == "[":
            out.append(char)
        elif char in _ESCAPED:
            out.append("\\" + char)
        else:
            out.append(char)
    out.append("(/.*)?$")
    return "".join(out)


@functools.lru_cache(maxsize=256)
def _compile(patterns: tuple[str, ...]) -> tuple[_Pattern, ...]:
    compiled = []
    for raw in patterns:
        text = raw.strip()
        if not text:
            continue
        text = _clean(text)
        exclusion = text.startswith("!")
        if exclusion:
            if len(text) == 1:
                raise ValueError('illegal exclusion pattern: "!"')
            text = text[1:]
        try:
            regex = re.compile(_pattern_regex(text))
        except re.error as exc:
            raise ValueError(f"bad pattern {text!r}: {exc}") from exc
        compiled.append(_Pattern(regex, len(text.split("/")), exclusion))
    return tuple(compiled)


def matches(path: str, patterns: Iterable[str]) -> bool:
    """Whether ``path`` or one of its parents is excluded by ``patterns``.

    Later patterns win; a pattern starting with ``!`` re-includes what it matches.
    Raises ``ValueError`` for a malformed pattern.
    """
    compiled = _compile(tuple(patterns))
    parent = _dir(path)
    parent_dirs = parent.split("/")
    matched = False
    for pattern in compiled:
        if pattern.exclusion != matched:
            continue
        found = pattern.regex.fullmatch(path) is not None
        if not found and parent != "." and pattern.dirs <= len(parent_dirs):
            found = pattern.regex.fullmatch("/".join(parent_dirs[: pattern.dirs])) is not None
        if found:
            matched = not pattern.exclusion
    return matched


def read_dockerignore(text: str) -> list[str]:
    """The patterns of a .dockerignore file, normalised relative to the context."""
    excludes = []
    for number, line in enumerate(text.splitlines()):
        if number == 0 and line.startswith(_BOM):
            line = line[len(_BOM):]
        if line.startswith("#"):
            continue
        pattern = line.strip()
        if not pattern:
            continue
        invert = pattern.startswith("!")
        if invert:
            pattern = pattern[1:].strip()
        if pattern:
            pattern = _clean(pattern)
            if len(pattern) > 1 and pattern.startswith("/"):
                pattern = pattern[1:]
        if invert:
            pattern = "!" + pattern
        excludes.append(pattern)
    return excludes


@dataclass
class FileContext:
    """A build context root and the patterns excluded from it."""

    root: str = ""
    excluded_files: list[str] = field(default_factory=list)

    def excludes_file(self, path: str) -> bool:
        """Whether ``path``, absolute under the root or relative to it, is excluded."""
        if has_filepath_prefix(path, self.root, False):
            try:
                path = os.path.relpath(path, self.root)
            except ValueError as exc:
                logger.error("Unable to get relative path, including %s in build: %s", path, exc)
                return False
        try:
            return matches(path, self.excluded_files)
        except ValueError as exc:
            logger.error("Error matching, including %s in build: %s", path, exc)
            return False


def new_file_context_from_dockerfile(dockerfile_path: str, build_context: str) -> FileContext:
    """A context rooted at ``build_context`` using the applicable .dockerignore.

    ``<dockerfile>.dockerignore`` is preferred over ``<context>/.dockerignore``.
    """
    path = dockerfile_path + ".dockerignore"
    if not filepath_exists(path):
        path = os.path.join(build_context, ".dockerignore")
    if not filepath_exists(path):
        return FileContext(root=build_context, excluded_files=[])
    logger.info("Using dockerignore file: %s", path)
    with open(path, encoding="utf-8") as handle:
        excluded = read_dockerignore(handle.read())
    return FileContext(root=build_context, excluded_files=excluded)