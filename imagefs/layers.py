"""Unpack image layers onto a root and walk a filesystem for changes."""

from __future__ import annotations

import io
import logging
import os
import posixpath
import queue
import re
import shutil
import stat
import tarfile
import threading
from dataclasses import dataclass
from typing import BinaryIO, Callable, Iterable, Iterator, Optional

from imagefs import timing
from imagefs.paths import MOUNTINFO_PATH, ROOT_DIR, IgnoreList, is_dest_dir

logger = logging.getLogger(__name__)

WHITEOUT_PREFIX = ".wh."
SNAPSHOT_TIMEOUT_ENV = "SNAPSHOT_TIMEOUT_DURATION"
DEFAULT_TIMEOUT = "90m"

ExtractFunction = Callable[[str, tarfile.TarInfo, Optional[BinaryIO]], None]
ChangeFunction = Callable[[str], bool]

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "μs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


class WalkTimeoutError(TimeoutError):
    """Raised when walking the filesystem takes longer than allowed."""


@dataclass(frozen=True)
class Layer:
    """One image layer: a way to open its uncompressed tar stream, and its media type."""

    opener: Callable[[], BinaryIO]
    media_type: str = ""

    @classmethod
    def from_bytes(cls, data: bytes, media_type: str = "") -> "Layer":
        """A layer whose uncompressed tar is held in memory."""
        return cls(lambda: io.BytesIO(data), media_type)

    @classmethod
    def from_file(cls, path: str, media_type: str = "") -> "Layer":
        """A layer whose uncompressed tar is stored at ``path``."""
        return cls(lambda: open(path, "rb"), media_type)

    def uncompressed(self) -> BinaryIO:
        """Open the uncompressed tar stream."""
        return self.opener()


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


def _remove_all(path: str) -> None:
    try:
        info = os.lstat(path)
    except FileNotFoundError:
        return
    if stat.S_ISDIR(info.st_mode):
        shutil.rmtree(path)
    else:
        os.unlink(path)


def _members(
    stream: BinaryIO, index: int
) -> Iterator[tuple[tarfile.TarInfo, Optional[BinaryIO]]]:
    try:
        archive = tarfile.open(fileobj=stream, mode="r|")
    except tarfile.ReadError as exc:
        if str(exc) == "empty file":
            return
        raise OSError(f"error reading tar {index}: {exc}") from exc
    with archive:
        while True:
            try:
                member = archive.next()
            except tarfile.TarError as exc:
                raise OSError(f"error reading tar {index}: {exc}") from exc
            if member is None:
                return
            data = archive.extractfile(member) if member.isreg() else None
            yield member, data


def get_fs_from_layers(
    root: str,
    layers: Iterable[Layer],
    extract: Optional[ExtractFunction] = None,
    include_whiteout: bool = False,
    ignore_list: Optional[IgnoreList] = None,
    mountinfo_path: Optional[str] = MOUNTINFO_PATH,
) -> list[str]:
    """Apply ``layers`` in order onto ``root`` and list every path extracted.

    Whiteout entries remove what they name unless it is ignored; they are passed
    to ``extract`` only when ``include_whiteout`` is set. The ignore list is reset
    first, with mount points read from ``mountinfo_path`` unless that is None.
    """
    ignore_list = IgnoreList() if ignore_list is None else ignore_list
    ignore_list.volumes.clear()
    try:
        ignore_list.reset(
            detect_filesystem=mountinfo_path is not None,
            mountinfo_path=mountinfo_path or MOUNTINFO_PATH,
        )
    except OSError as exc:
        raise OSError(f"initializing filesystem ignore list: {exc}") from exc
    logger.debug("Ignore list: %s", ignore_list.entries)

    if extract is None:
        raise ValueError("must supply an extract function")

    extracted: list[str] = []
    for index, layer in enumerate(layers):
        if layer.media_type:
            logger.debug("Extracting layer %d of media type %s", index, layer.media_type)
        else:
            logger.debug("Extracting layer %d", index)

        with layer.uncompressed() as stream:
            for member, data in _members(stream, index):
                path = _join(root, _clean(member.name))
                base = posixpath.basename(path)
                directory = _clean(posixpath.dirname(path))

                if base.startswith(WHITEOUT_PREFIX):
                    logger.debug("Whiting out %s", path)
                    target = _join(directory, base[len(WHITEOUT_PREFIX):])
                    if ignore_list.is_ignored(target):
                        logger.debug("Not deleting %s, as it's ignored", target)
                        continue
                    if ignore_list.has_ignored_child(target):
                        logger.debug("Not deleting %s, as it contains a ignored path", target)
                        continue
                    try:
                        _remove_all(target)
                    except OSError as exc:
                        raise OSError(f"removing whiteout {member.name}: {exc}") from exc
                    if not include_whiteout:
                        logger.debug("Not including whiteout files")
                        continue

                extract(root, member, data)
                extracted.append(path)
    return extracted


def delete_filesystem(root_dir: str = ROOT_DIR, ignore_list: Optional[IgnoreList] = None) -> None:
    """Remove everything below ``root_dir`` except ignored paths and their parents."""
    ignore_list = IgnoreList() if ignore_list is None else ignore_list
    logger.info("Deleting filesystem...")

    def descend(path: str) -> None:
        try:
            names = sorted(os.listdir(path))
        except OSError:
            return
        for name in names:
            visit(_join(path, name))

    def visit(path: str) -> None:
        try:
            info = os.lstat(path)
        except OSError:
            return
        is_dir = stat.S_ISDIR(info.st_mode)
        if ignore_list.is_ignored(path):
            if not os.path.exists(path):
                logger.debug("Path %s ignored, but not exists", path)
            elif not is_dir:
                logger.debug("Not deleting %s, as it's ignored", path)
            return
        if ignore_list.has_ignored_child(path) or path == root_dir:
            if path != root_dir:
                logger.debug("Not deleting %s, as it contains a ignored path", path)
            if is_dir:
                descend(path)
            return
        _remove_all(path)

    visit(root_dir)


def _parse_duration(text: str) -> float:
    """Seconds in a duration written like ``90m``, ``1h30m`` or ``1.5s``."""
    rest = text
    sign = 1.0
    if rest[:1] in "+-" and rest:
        sign = -1.0 if rest[0] == "-" else 1.0
        rest = rest[1:]
    if rest == "0":
        return 0.0
    if not rest:
        raise ValueError(f"invalid duration {text!r}")
    total = 0.0
    position = 0
    while position < len(rest):
        match = _DURATION_PART.match(rest, position)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        position = match.end()
    return sign * total


def _walk_dir(
    directory: str,
    existing_paths: set[str],
    change_func: ChangeFunction,
    ignore_list: IgnoreList,
) -> tuple[list[str], set[str]]:
    found: list[str] = []
    deleted = set(existing_paths)

    class _Stop(Exception):
        pass

    def visit(path: str) -> None:
        logger.debug("Analyzing path '%s'", path)
        if ignore_list.is_exact(path):
            if is_dest_dir(path):
                logger.debug("Skipping paths under '%s', as it is an ignored directory", path)
            return
        deleted.discard(path)
        try:
            changed = change_func(path)
        except Exception as exc:
            logger.warning("Stopped walking at %s: %s", path, exc)
            raise _Stop from exc
        if changed:
            found.append(path)
        try:
            info = os.lstat(path)
        except OSError:
            return
        if stat.S_ISDIR(info.st_mode):
            try:
                names = sorted(os.listdir(path))
            except OSError:
                return
            for name in names:
                visit(_join(path, name))

    try:
        visit(_clean(directory))
    except _Stop:
        pass
    return found, deleted


def walk_fs(
    directory: str,
    existing_paths: Iterable[str],
    change_func: ChangeFunction,
    ignore_list: Optional[IgnoreList] = None,
    timeout: Optional[float] = None,
) -> tuple[list[str], set[str]]:
    """Walk ``directory`` and return the changed paths and the vanished ones.

    A path is changed when ``change_func`` says so; paths of ``existing_paths``
    not found on disk come back as deleted. ``timeout`` is in seconds; when None
    it is read from ``SNAPSHOT_TIMEOUT_DURATION`` and defaults to 90 minutes.
    """
    ignore_list = IgnoreList() if ignore_list is None else ignore_list
    if timeout is None:
        timeout_text = os.environ.get(SNAPSHOT_TIMEOUT_ENV, "")
        if not timeout_text:
            logger.debug(
                "Environment '%s' not set. Using default snapshot timeout '%s'",
                SNAPSHOT_TIMEOUT_ENV,
                DEFAULT_TIMEOUT,
            )
            timeout_text = DEFAULT_TIMEOUT
        try:
            timeout = _parse_duration(timeout_text)
        except ValueError as exc:
            raise ValueError(f"Could not parse duration '{timeout_text}'") from exc

    timer = timing.start("Walking filesystem with timeout")
    results: "queue.Queue[tuple[list[str], set[str]]]" = queue.Queue(maxsize=1)
    worker = threading.Thread(
        target=lambda: results.put(
            _walk_dir(directory, set(existing_paths), change_func, ignore_list)
        ),
        daemon=True,
    )
    worker.start()
    try:
        return results.get(timeout=max(timeout, 0.0))
    except queue.Empty:
        raise WalkTimeoutError(f"Timed out snapshotting FS in {timeout}s") from None
    finally:
        timing.DEFAULT_RUN.stop(timer)


def _is_same(first: os.stat_result, second: os.stat_result) -> bool:
    return (
        first.st_mode == second.st_mode
        and first.st_mtime_ns == second.st_mtime_ns
        and first.st_size == second.st_size
        and first.st_uid == second.st_uid
        and first.st_gid == second.st_gid
    )


def get_fs_info_map(
    directory: str,
    existing: dict[str, os.stat_result],
    ignore_list: Optional[IgnoreList] = None,
) -> tuple[dict[str, os.stat_result], list[str]]:
    """Stat every path below ``directory`` and return those new or changed since ``existing``."""
    ignore_list = IgnoreList() if ignore_list is None else ignore_list
    file_map: dict[str, os.stat_result] = {}
    found: list[str] = []
    timer = timing.start("Walking filesystem with Stat")

    def visit(path: str) -> None:
        if ignore_list.is_ignored(path):
            if is_dest_dir(path):
                logger.debug("Skipping paths under %s, as it is a ignored directory", path)
            return
        try:
            info = os.lstat(path)
        except OSError:
            return
        previous = existing.get(path)
        if previous is None or not _is_same(previous, info):
            file_map[path] = info
            found.append(path)
        if stat.S_ISDIR(info.st_mode):
            try:
                names = sorted(os.listdir(path))
            except OSError:
                return
            for name in names:
                visit(_join(path, name))

    try:
        visit(_clean(directory))
    finally:
        timing.DEFAULT_RUN.stop(timer)
    return file_map, found