"""Resolve the arguments of build commands: variables, sources, destinations and owners."""

from __future__ import annotations

import functools
import grp
import logging
import os
import posixpath
import pwd
import re
import stat
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence
from urllib.parse import urlsplit

from imagefs.context import FileContext
from imagefs.paths import ROOT_DIR, is_dest_dir, relative_files

logger = logging.getLogger(__name__)

DO_NOT_CHANGE_UID = -1
DO_NOT_CHANGE_GID = -1

ESCAPE_TOKEN = "\\"
_PATH_SEPARATOR = "/"
_SPECIAL_PARAMS = set("@*#?-$!0")
_REMOTE_TIMEOUT = 30.0
_MAX_UINT32 = 0xFFFFFFFF
_MULTIPLE_SOURCES = (
    "when specifying multiple sources in a COPY command, "
    "destination must be a directory and end in '/'"
)

IdGetter = Callable[[str, str, bool], "tuple[int, int]"]


class CommandError(ValueError):
    """Raised when a command argument cannot be resolved or is not valid."""


@dataclass
class User:
    """A user account, or just a numeric id for a user not on the system."""

    uid: str
    gid: str = ""
    username: str = ""
    name: str = ""
    home_dir: str = ""


class _FallbackToUID(Exception):
    """Signals that the group id should be the user id."""


def _clean(path: str) -> str:
    if path == "":
        return "."
    cleaned = posixpath.normpath(path)
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def _join(*parts: str) -> str:
    joined = "/".join(part for part in parts if part)
    return _clean(joined) if joined else ""


def _base(path: str) -> str:
    if path == "":
        return "."
    stripped = path.rstrip("/")
    if stripped == "":
        return "/"
    return stripped[stripped.rfind("/") + 1 :]


class _WordLexer:
    """Expands one word the way a Dockerfile instruction argument is expanded."""

    def __init__(self, word: str, envs: Sequence[str]) -> None:
        self._text = word
        self._pos = 0
        self._envs = envs

    def _peek(self) -> str:
        return self._text[self._pos] if self._pos < len(self._text) else ""

    def _next(self) -> str:
        char = self._peek()
        if char:
            self._pos += 1
        return char

    def _lookup(self, name: str) -> Optional[str]:
        for env in self._envs:
            key, sep, value = env.partition("=")
            if key == name:
                return value if sep else ""
        return None

    def process(self, stop: str = "") -> str:
        out: list[str] = []
        while True:
            char = self._peek()
            if not char:
                break
            if stop and char == stop:
                self._next()
                return "".join(out)
            if char == "'":
                out.append(self._single_quote())
            elif char == '"':
                out.append(self._double_quote())
            elif char == "$":
                out.append(self._dollar())
            else:
                self._next()
                if char == ESCAPE_TOKEN:
                    char = self._next()
                    if not char:
                        break
                out.append(char)
        if stop:
            raise CommandError(
                f"unexpected end of statement while looking for matching {stop}"
            )
        return "".join(out)

    def _single_quote(self) -> str:
        self._next()
        out: list[str] = []
        while True:
            char = self._next()
            if not char:
                raise CommandError(
                    "unexpected end of statement while looking for matching single-quote"
                )
            if char == "'":
                return "".join(out)
            out.append(char)

    def _double_quote(self) -> str:
        self._next()
        out: list[str] = []
        while True:
            char = self._peek()
            if not char:
                raise CommandError(
                    "unexpected end of statement while looking for matching double-quote"
                )
            if char == '"':
                self._next()
                return "".join(out)
            if char == "$":
                out.append(self._dollar())
                continue
            char = self._next()
            if char == ESCAPE_TOKEN:
                following = self._peek()
                if not following:
                    continue
                if following in ('"', "$", ESCAPE_TOKEN):
                    char = self._next()
            out.append(char)

    def _name(self) -> str:
        name: list[str] = []
        while True:
            char = self._peek()
            if not char:
                break
            if not name and char.isdecimal():
                while self._peek() and self._peek().isdecimal():
                    name.append(self._next())
                return "".join(name)
            if not name and char in _SPECIAL_PARAMS:
                return self._next()
            if not (char.isalpha() or char.isdecimal() or char == "_"):
                break
            name.append(self._next())
        return "".join(name)

    def _dollar(self) -> str:
        self._next()
        if self._peek() != "{":
            name = self._name()
            if not name:
                return "$"
            return self._lookup(name) or ""

        self._next()
        following = self._peek()
        if not following:
            raise CommandError("syntax error: missing '}'")
        if following in "{}:":
            raise CommandError("syntax error: bad substitution")
        name = self._name()
        char = self._next()
        if char == "}":
            return self._lookup(name) or ""
        if not char:
            raise CommandError("syntax error: missing '}'")

        colon = char == ":"
        if colon:
            char = self._next()
        if char not in ("-", "+", "?"):
            raise CommandError(f"unsupported modifier ({char}) in substitution")
        try:
            word = self.process("}")
        except CommandError:
            if not self._peek():
                raise CommandError("syntax error: missing '}'") from None
            raise
        value = self._lookup(name)
        found = value is not None
        current = value or ""

        if char == "-":
            if colon:
                return word if not current else current
            return current if found else word
        if char == "+":
            if colon:
                return word if current else ""
            return word if found else ""
        if colon and not current:
            raise CommandError(f"{name}: {word or 'is not allowed to be empty'}")
        if not colon and not found:
            raise CommandError(f"{name}: {word or 'is not allowed to be unset'}")
        return current


def process_word(word: str, envs: Sequence[str]) -> str:
    """Expand variables, quotes and escapes in ``word`` using ``KEY=value`` envs."""
    return _WordLexer(word, list(envs or [])).process()


def is_src_remote_file_url(rawurl: str) -> bool:
    """Whether ``rawurl`` is an http(s) URL that answers a GET request."""
    try:
        parts = urlsplit(rawurl)
    except ValueError:
        return False
    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        return False
    try:
        with urllib.request.urlopen(rawurl, timeout=_REMOTE_TIMEOUT):  # noqa: S310
            return True
    except urllib.error.HTTPError as exc:
        exc.close()
        return True
    except (OSError, ValueError):
        return False


def resolve_environment_replacement(
    value: str, envs: Sequence[str], is_filepath: bool = False
) -> str:
    """Expand ``value``; a file path is then cleaned, keeping a trailing slash."""
    expanded = process_word(value, envs)
    if not is_filepath or is_src_remote_file_url(expanded):
        return expanded
    is_dir = expanded.endswith(_PATH_SEPARATOR)
    expanded = _clean(expanded)
    if is_dir and not expanded.endswith(_PATH_SEPARATOR):
        expanded += _PATH_SEPARATOR
    return expanded


def resolve_environment_replacement_list(
    values: Iterable[str], envs: Sequence[str], is_filepath: bool = False
) -> list[str]:
    """Expand every value of ``values``."""
    resolved = []
    for value in values:
        result = resolve_environment_replacement(value, envs, is_filepath)
        logger.debug("Resolved %s to %s", value, result)
        resolved.append(result)
    return resolved


def contains_wildcards(paths: Iterable[str]) -> bool:
    """Whether any path holds ``*``, ``?`` or ``[``."""
    return any(any(char in path for char in "*?[") for path in paths)


def _class_char(pattern: str, index: int) -> tuple[str, int]:
    if index >= len(pattern) or pattern[index] in "-]":
        raise CommandError(f"syntax error in pattern {pattern!r}")
    if pattern[index] == "\\":
        index += 1
        if index >= len(pattern):
            raise CommandError(f"syntax error in pattern {pattern!r}")
    return pattern[index], index + 1


@functools.lru_cache(maxsize=512)
def _pattern_regex(pattern: str) -> re.Pattern[str]:
    out: list[str] = []
    i, n = 0, len(pattern)
    while i < n:
        char = pattern[i]
        i += 1
        if char == "*":
            out.append("[^/]*")
        elif char == "?":
            out.append("[^/]")
        elif char == "\\":
            if i >= n:
                raise CommandError(f"syntax error in pattern {pattern!r}")
            out.append(re.escape(pattern[i]))
            i += 1
        elif char == "[":
            negate = i < n and pattern[i] == "^"
            if negate:
                i += 1
            ranges: list[str] = []
            count = 0
            while True:
                if i >= n:
                    raise CommandError(f"syntax error in pattern {pattern!r}")
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
                out.append("[^" + "".join(ranges) + "]" if ranges else ".")
            else:
                out.append("[" + "".join(ranges) + "]" if ranges else "(?!)")
        else:
            out.append(re.escape(char))
    return re.compile("".join(out), re.DOTALL)


def _path_match(pattern: str, name: str) -> bool:
    return _pattern_regex(pattern).fullmatch(name) is not None


def match_sources(
    srcs: Iterable[str], files: Sequence[str], root_dir: str = ROOT_DIR
) -> list[str]:
    """The files matched by each source pattern; remote URLs pass through."""
    matched: list[str] = []
    for src in srcs:
        if is_src_remote_file_url(src):
            matched.append(src)
            continue
        src = _clean(src)
        absolute = posixpath.isabs(src)
        for file in files:
            candidate = _join(root_dir, file) if absolute else file
            if _path_match(src, candidate) or src == candidate:
                matched.append(candidate)
    return matched


def resolve_sources(srcs: Sequence[str], root: str) -> list[str]:
    """Expand wildcards in ``srcs`` against the files below ``root``."""
    srcs = list(srcs)
    if not contains_wildcards(srcs):
        return srcs
    logger.info("Resolving srcs %s...", srcs)
    try:
        files = relative_files("", root)
    except OSError as exc:
        raise CommandError(f"resolving sources: {exc}") from exc
    try:
        resolved = match_sources(srcs, files)
    except CommandError as exc:
        raise CommandError(f"matching sources: {exc}") from exc
    logger.debug("Resolved sources to %s", resolved)
    return resolved


def destination_filepath(src: str, dest: str, cwd: str) -> str:
    """Where ``src`` lands when copied to ``dest`` from working directory ``cwd``."""
    src_name = src[src.rfind("/") + 1 :]
    new_dest = dest
    if not posixpath.isabs(new_dest):
        new_dest = _join(cwd, new_dest)
        if dest.endswith(_PATH_SEPARATOR) or dest.endswith("."):
            new_dest += _PATH_SEPARATOR
    if is_dest_dir(new_dest):
        new_dest = _join(new_dest, src_name)
    if not src_name and not new_dest.endswith(_PATH_SEPARATOR):
        new_dest += _PATH_SEPARATOR
    return new_dest


def url_destination_filepath(
    rawurl: str, dest: str, cwd: str, envs: Optional[Sequence[str]] = None
) -> str:
    """Where a file fetched from ``rawurl`` is saved when added to ``dest``."""
    if not is_dest_dir(dest):
        if not posixpath.isabs(dest):
            return _join(cwd, dest)
        return dest
    url_base = resolve_environment_replacement(_base(rawurl), envs or [], True)
    dest_path = _join(dest, url_base)
    if not posixpath.isabs(dest):
        dest_path = _join(cwd, dest_path)
    return dest_path


def is_srcs_valid(
    source_paths: Sequence[str],
    dest: str,
    resolved_sources: Sequence[str],
    file_context: FileContext,
) -> None:
    """Raise ``CommandError`` unless the sources can be copied to ``dest``."""
    if not contains_wildcards(source_paths):
        total_srcs = sum(1 for src in source_paths if not file_context.excludes_file(src))
        if total_srcs > 1 and not is_dest_dir(dest):
            raise CommandError(_MULTIPLE_SOURCES)

    # A single directory source makes the destination a directory.
    if len(resolved_sources) == 1:
        only = resolved_sources[0]
        if is_src_remote_file_url(only):
            return
        path = _join(file_context.root, only)
        try:
            info = os.lstat(path)
        except OSError as exc:
            raise CommandError(f"failed to get fileinfo for {path}: {exc}") from exc
        if stat.S_ISDIR(info.st_mode):
            return

    total_files = 0
    for src in resolved_sources:
        if is_src_remote_file_url(src):
            total_files += 1
            continue
        try:
            files = relative_files(_clean(src), file_context.root)
        except OSError as exc:
            raise CommandError(f"failed to get relative files: {exc}") from exc
        total_files += sum(1 for file in files if not file_context.excludes_file(file))

    if total_files == 0:
        raise CommandError("copy failed: no source files specified")
    if not is_dest_dir(dest) and total_files > 1:
        raise CommandError(_MULTIPLE_SOURCES)


def resolve_env_and_wildcards(
    source_paths: Sequence[str],
    dest_path: str,
    file_context: FileContext,
    envs: Sequence[str],
) -> tuple[list[str], str]:
    """Expand variables and wildcards in a copy's sources and destination, then validate."""
    try:
        resolved = resolve_environment_replacement_list(source_paths, envs, True)
    except CommandError as exc:
        raise CommandError(f"failed to resolve environment: {exc}") from exc
    if not resolved:
        raise CommandError("resolved envs is empty")
    try:
        dest = resolve_environment_replacement_list([dest_path], envs, True)[0]
    except CommandError as exc:
        raise CommandError(f"failed to resolve environment for dest path: {exc}") from exc
    try:
        srcs = resolve_sources(resolved, file_context.root)
    except CommandError as exc:
        raise CommandError(f"failed to resolve sources: {exc}") from exc
    is_srcs_valid(source_paths, dest_path, srcs, file_context)
    return srcs, dest


def update_config_env(
    env_vars: Iterable[tuple[str, str]],
    config_env: Sequence[str],
    replacement_envs: Sequence[str],
) -> list[str]:
    """``config_env`` with the expanded pairs set, replacing keys in place, order kept."""
    new_envs = [
        (
            resolve_environment_replacement(key, replacement_envs, False),
            resolve_environment_replacement(value, replacement_envs, False),
        )
        for key, value in env_vars
    ]
    pairs: list[tuple[str, str]] = []
    for env in config_env:
        key, _, value = env.partition("=")
        pairs.append((key, value))
    for new_key, new_value in new_envs:
        for index, (key, _) in enumerate(pairs):
            if key == new_key:
                logger.debug("Replacing environment variable %s with %s in config", key, new_key)
                pairs[index] = (new_key, new_value)
                break
        else:
            pairs.append((new_key, new_value))
    return [f"{key}={value}" for key, value in pairs]


def _parse_uint32(text: str) -> int:
    if not text or not text.isascii() or not text.isdigit():
        raise ValueError(f"invalid syntax: {text!r}")
    value = int(text)
    if value > _MAX_UINT32:
        raise ValueError(f"value out of range: {text!r}")
    return value


def _user_from_entry(entry: pwd.struct_passwd) -> User:
    return User(
        uid=str(entry.pw_uid),
        gid=str(entry.pw_gid),
        username=entry.pw_name,
        name=entry.pw_gecos.split(",", 1)[0],
        home_dir=entry.pw_dir,
    )


def lookup_user(user_str: str) -> User:
    """The user named ``user_str``, or with that uid; a bare uid if neither exists."""
    try:
        return _user_from_entry(pwd.getpwnam(user_str))
    except KeyError:
        pass
    try:
        uid = _parse_uint32(user_str)
    except ValueError:
        raise CommandError(
            f"user {user_str} is not a uid and does not exist on the system"
        ) from None
    try:
        return _user_from_entry(pwd.getpwuid(uid))
    except KeyError:
        return User(uid=str(uid), home_dir="/")


def _parse_gid(group_str: str, fallback_to_uid: bool) -> int:
    try:
        return _parse_uint32(group_str)
    except ValueError as exc:
        if fallback_to_uid:
            raise _FallbackToUID from exc
        raise CommandError(f"invalid group id {group_str!r}: {exc}") from exc


def _gid_from_name(group_str: str, fallback_to_uid: bool) -> int:
    try:
        gid = grp.getgrnam(group_str).gr_gid
    except KeyError:
        return _parse_gid(group_str, fallback_to_uid)
    return _parse_gid(str(gid), fallback_to_uid)


def _get_uid_and_gid(user_str: str, group_str: str, fallback_to_uid: bool) -> tuple[int, int]:
    user = lookup_user(user_str)
    try:
        uid = _parse_uint32(user.uid)
    except ValueError as exc:
        raise CommandError(f"invalid user id {user.uid!r}: {exc}") from exc
    try:
        gid = _gid_from_name(group_str, fallback_to_uid)
    except _FallbackToUID:
        return uid, uid
    return uid, gid


def _ids_from_string(
    user_group: str, fallback_to_uid: bool, id_getter: IdGetter
) -> tuple[int, int]:
    parts = user_group.split(":")
    group = parts[1] if len(parts) > 1 else ""
    return id_getter(parts[0], group, fallback_to_uid)


def get_uid_and_gid_from_string(user_group: str, fallback_to_uid: bool = False) -> tuple[int, int]:
    """Ids from ``user:group``; without a valid group the gid is the uid if allowed."""
    return _ids_from_string(user_group, fallback_to_uid, _get_uid_and_gid)


def get_user_group(
    chown: str, env: Sequence[str], id_getter: Optional[IdGetter] = None
) -> tuple[int, int]:
    """Ids for a ``--chown`` value; (-1, -1) when it is empty."""
    if chown == "":
        return DO_NOT_CHANGE_UID, DO_NOT_CHANGE_GID
    expanded = resolve_environment_replacement(chown, env, False)
    return _ids_from_string(expanded, True, id_getter or _get_uid_and_gid)