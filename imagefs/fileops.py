"""Extract, create and copy files, keeping their modes, owners and times."""

from __future__ import annotations

import logging
import os
import posixpath
import shutil
import stat
import tarfile
import urllib.error
import urllib.request
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime
from typing import BinaryIO, Union

from imagefs.context import FileContext
from imagefs.paths import ROOT_DIR, IgnoreList, filepath_exists, relative_files

logger = logging.getLogger(__name__)

DO_NOT_CHANGE_UID = -1
DO_NOT_CHANGE_GID = -1

_MAX_ID = 0xFFFFFFFF
_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

TimeValue = Union[datetime, float, int, None]


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


def _dir(path: str) -> str:
    return _clean(posixpath.dirname(path))


def _owner(value: int) -> int:
    """An id for ``os.chown``; negative or all-ones means leave unchanged."""
    if value < 0 or value == _MAX_ID:
        return -1
    return value


def _remove_all(path: str) -> None:
    try:
        info = os.lstat(path)
    except FileNotFoundError:
        return
    if stat.S_ISDIR(info.st_mode):
        shutil.rmtree(path)
    else:
        os.unlink(path)


def _set_file_permissions(path: str, mode: int, uid: int, gid: int) -> None:
    os.chown(path, _owner(uid), _owner(gid))
    # chown may reset special bits, so the mode is applied afterwards.
    os.chmod(path, mode & 0o7777)


def _to_ns(value: TimeValue) -> int:
    if value is None:
        return 0
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return (value - _EPOCH) // timedelta(microseconds=1) * 1000
    return round(float(value) * 1_000_000_000)


def set_file_times(path: str, atime: TimeValue = None, mtime: TimeValue = None) -> None:
    """Set access and modification times; ``None`` stands for the Unix epoch."""
    if mtime is None:
        logger.debug("Mod time for %s is zero, converting to zero for epoch", path)
    if atime is None:
        logger.debug("Access time for %s is zero, converting to zero for epoch", path)
    access_ns, modify_ns = _to_ns(atime), _to_ns(mtime)
    try:
        os.utime(path, ns=(access_ns, modify_ns))
    except OSError as exc:
        raise OSError(
            f"couldn't modify times: atime {access_ns}ns mtime {modify_ns}ns: {exc}"
        ) from exc


def _access_time(member: tarfile.TarInfo) -> float | None:
    raw = member.pax_headers.get("atime")
    if raw is None:
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _check_ignore_list_root(root: str, ignore_list: IgnoreList) -> bool:
    if root == ROOT_DIR:
        return False
    return ignore_list.is_ignored(root)


def _create_parent_directory(path: str) -> None:
    base_dir = _dir(path)
    try:
        info = os.lstat(base_dir)
    except FileNotFoundError:
        logger.debug("BaseDir %s for file %s does not exist. Creating.", base_dir, path)
        os.makedirs(base_dir, 0o755, exist_ok=True)
        return
    if stat.S_ISLNK(info.st_mode):
        logger.info("Destination cannot be a symlink %s", base_dir)
        raise NotADirectoryError(f"destination cannot be a symlink: {base_dir}")


def extract_file(
    dest: str,
    member: tarfile.TarInfo,
    data: BinaryIO | None = None,
    ignore_list: IgnoreList | None = None,
) -> None:
    """Write one archive member below ``dest``; ``data`` holds a regular file's bytes."""
    ignore_list = IgnoreList() if ignore_list is None else ignore_list
    path = _join(dest, _clean(member.name))
    directory = _dir(path)

    if ignore_list.is_ignored(os.path.abspath(path)) and not _check_ignore_list_root(
        dest, ignore_list
    ):
        logger.debug("Not adding %s because it is ignored", path)
        return

    if member.type in (tarfile.REGTYPE, tarfile.AREGTYPE):
        logger.debug("Creating file %s", path)
        # The file may come before its directory, or replace a directory.
        if not os.path.isdir(directory):
            os.makedirs(directory, 0o755, exist_ok=True)
        if filepath_exists(path):
            _remove_all(path)
        with open(path, "wb") as handle:
            if data is not None:
                shutil.copyfileobj(data, handle)
        _set_file_permissions(path, member.mode, member.uid, member.gid)
        set_file_times(path, _access_time(member), member.mtime)
    elif member.type == tarfile.DIRTYPE:
        logger.debug("Creating dir %s", path)
        mkdir_all_with_permissions(path, member.mode, member.uid, member.gid)
    elif member.type == tarfile.LNKTYPE:
        logger.debug("Link from %s to %s", member.linkname, path)
        if ignore_list.is_ignored(os.path.abspath(member.linkname)):
            logger.debug("Skipping link to %s because it is ignored", member.linkname)
            return
        os.makedirs(directory, 0o755, exist_ok=True)
        if filepath_exists(path):
            _remove_all(path)
        os.link(_clean(_join(dest, member.linkname)), path)
    elif member.type == tarfile.SYMTYPE:
        logger.debug("Symlink from %s to %s", member.linkname, path)
        os.makedirs(directory, 0o755, exist_ok=True)
        if filepath_exists(path):
            _remove_all(path)
        os.symlink(member.linkname, path)


def untar(
    fileobj: BinaryIO, dest: str, ignore_list: IgnoreList | None = None
) -> list[str]:
    """Extract an uncompressed tar stream below ``dest`` and list the paths written."""
    extracted: list[str] = []
    with tarfile.open(fileobj=fileobj, mode="r|") as archive:
        for member in archive:
            data = archive.extractfile(member) if member.isreg() else None
            extract_file(dest, member, data, ignore_list)
            extracted.append(_join(dest, _clean(member.name)))
    return extracted


def mkdir_all_with_permissions(
    path: str, mode: int, uid: int = DO_NOT_CHANGE_UID, gid: int = DO_NOT_CHANGE_GID
) -> None:
    """Create ``path`` and its parents, then set its owner and exact mode."""
    try:
        info = os.stat(path)
    except FileNotFoundError:
        info = None
    except OSError as exc:
        raise OSError(f"error calling stat on {path}: {exc}") from exc
    if info is not None and not stat.S_ISDIR(info.st_mode):
        logger.debug("Removing file because it needs to be a directory %s", path)
        os.remove(path)

    os.makedirs(path, mode & 0o777, exist_ok=True)
    if uid > _MAX_ID or gid > _MAX_ID:
        raise ValueError(
            f"Numeric User-ID or Group-ID greater than {_MAX_ID} are not properly supported."
        )
    os.chown(path, _owner(uid), _owner(gid))
    os.chmod(path, mode & 0o7777)


def _reset_file_ownership_if_not_matching(path: str, uid: int, gid: int) -> None:
    info = os.lstat(path)
    if info.st_uid != uid and info.st_gid != gid:
        os.chown(path, uid, gid)


def create_file(path: str, reader: BinaryIO, perm: int, uid: int, gid: int) -> None:
    """Write the contents of ``reader`` to ``path`` with the given mode and owner."""
    _create_parent_directory(path)
    if filepath_exists(path):
        logger.debug("file at %s already exists, resetting file ownership to root", path)
        _reset_file_ownership_if_not_matching(path, 0, 0)
    with open(path, "wb") as handle:
        shutil.copyfileobj(reader, handle)
    _set_file_permissions(path, perm, uid, gid)


def determine_target_file_ownership(
    st: os.stat_result, uid: int, gid: int
) -> tuple[int, int]:
    """The requested ids, falling back to the file's own where they are -1."""
    if uid <= DO_NOT_CHANGE_UID:
        uid = st.st_uid
    if gid <= DO_NOT_CHANGE_GID:
        gid = st.st_gid
    return uid, gid


def copy_symlink(src: str, dest: str, context: FileContext) -> bool:
    """Recreate the symlink ``src`` at ``dest``; True when ``src`` is excluded."""
    if context.excludes_file(src):
        logger.debug("%s found in .dockerignore, ignoring", src)
        return True
    if filepath_exists(dest):
        _remove_all(dest)
    _create_parent_directory(dest)
    try:
        link = os.readlink(src)
    except OSError:
        logger.debug("Could not read link for %s", src)
        link = ""
    os.symlink(link, dest)
    return False


def copy_file(
    src: str,
    dest: str,
    context: FileContext,
    uid: int = DO_NOT_CHANGE_UID,
    gid: int = DO_NOT_CHANGE_GID,
) -> bool:
    """Copy the file ``src`` to ``dest``; True when ``src`` is excluded."""
    if context.excludes_file(src):
        logger.debug("%s found in .dockerignore, ignoring", src)
        return True
    if src == dest:
        # Copying onto itself would truncate the file; it is not an exclusion.
        return False
    info = os.stat(src)
    logger.debug("Copying file %s to %s", src, dest)
    with open(src, "rb") as source:
        owner, group = determine_target_file_ownership(info, uid, gid)
        create_file(dest, source, stat.S_IMODE(info.st_mode), owner, group)
    return False


def copy_dir(
    src: str,
    dest: str,
    context: FileContext,
    uid: int = DO_NOT_CHANGE_UID,
    gid: int = DO_NOT_CHANGE_GID,
) -> list[str]:
    """Copy the tree at ``src`` to ``dest`` and list the destination paths."""
    copied: list[str] = []
    for relative in relative_files("", src):
        full_path = _join(src, relative)
        info = os.lstat(full_path)
        if context.excludes_file(full_path):
            logger.debug("%s found in .dockerignore, ignoring", full_path)
            continue
        dest_path = _join(dest, relative)
        if stat.S_ISDIR(info.st_mode):
            logger.debug("Creating directory %s", dest_path)
            owner, group = determine_target_file_ownership(info, uid, gid)
            mkdir_all_with_permissions(dest_path, stat.S_IMODE(info.st_mode), owner, group)
        elif stat.S_ISLNK(info.st_mode):
            copy_symlink(full_path, dest_path, context)
        else:
            copy_file(full_path, dest_path, context, uid, gid)
        copied.append(dest_path)
    return copied


def _copy_tree(src: str, dest: str) -> None:
    info = os.lstat(src)
    if stat.S_ISLNK(info.st_mode):
        if filepath_exists(dest):
            _remove_all(dest)
        os.symlink(os.readlink(src), dest)
    elif stat.S_ISDIR(info.st_mode):
        os.makedirs(dest, 0o755, exist_ok=True)
        for name in sorted(os.listdir(src)):
            _copy_tree(_join(src, name), _join(dest, name))
        os.chmod(dest, stat.S_IMODE(info.st_mode))
    else:
        os.makedirs(_dir(dest), 0o755, exist_ok=True)
        shutil.copyfile(src, dest)
        os.chmod(dest, stat.S_IMODE(info.st_mode))


def copy_file_or_symlink(
    src: str, dest_dir: str, root: str, ignore_list: IgnoreList | None = None
) -> None:
    """Persist ``root``/``src`` under ``dest_dir``, keeping symlinks as links."""
    dest_file = _join(dest_dir, src)
    src_path = _join(root, src)
    info = os.lstat(src_path)
    if stat.S_ISLNK(info.st_mode):
        link = os.readlink(src_path)
        _create_parent_directory(dest_file)
        os.symlink(link, dest_file)
        return
    _copy_tree(src_path, dest_file)
    copy_ownership(src_path, dest_dir, root, ignore_list)
    os.chmod(dest_file, stat.S_IMODE(info.st_mode))


def copy_ownership(
    src: str, dest_dir: str, root: str, ignore_list: IgnoreList | None = None
) -> None:
    """Give every copy below ``dest_dir`` the owner of its original under ``root``."""
    ignore_list = IgnoreList() if ignore_list is None else ignore_list

    def visit(path: str) -> None:
        info = os.lstat(path)
        if stat.S_ISLNK(info.st_mode):
            return
        is_dir = stat.S_ISDIR(info.st_mode)
        dest_path = _join(dest_dir, os.path.relpath(path, root))

        for checked, other in ((src, dest_path), (dest_dir, path)):
            if ignore_list.is_ignored(checked) and ignore_list.is_ignored(other):
                if not os.path.exists(other):
                    logger.debug("Path %s ignored, but not exists", other)
                elif not is_dir:
                    logger.debug("Not copying ownership for %s, as it's ignored", other)
                return

        owner = os.stat(path)
        os.chown(dest_path, owner.st_uid, owner.st_gid)
        if is_dir:
            for name in sorted(os.listdir(path)):
                visit(_join(path, name))

    visit(src)


def create_target_tarfile(tarpath: str) -> BinaryIO:
    """Open ``tarpath`` for writing, creating its directory when missing."""
    base_dir = _dir(tarpath)
    if not os.path.lexists(base_dir):
        logger.debug("BaseDir %s for file %s does not exist. Creating.", base_dir, tarpath)
        os.makedirs(base_dir, 0o755, exist_ok=True)
    return open(tarpath, "w+b")


def download_file_to_dest(
    url: str, dest: str, uid: int = DO_NOT_CHANGE_UID, gid: int = DO_NOT_CHANGE_GID
) -> None:
    """Fetch ``url`` into ``dest`` with mode 0600 and the Last-Modified time, if any."""
    try:
        response = urllib.request.urlopen(url)  # noqa: S310
    except urllib.error.HTTPError as exc:
        exc.close()
        raise OSError(f"invalid response status {exc.code}") from None
    with response:
        if response.status >= 400:
            raise OSError(f"invalid response status {response.status}")
        create_file(dest, response, 0o600, uid, gid)
        last_modified = response.headers.get("Last-Modified", "")
    if not last_modified:
        return
    try:
        modified = parsedate_to_datetime(last_modified)
    except (TypeError, ValueError):
        return
    set_file_times(dest, modified, modified)