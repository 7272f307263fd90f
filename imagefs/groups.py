"""Read group membership from a file in /etc/group form."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Iterable

logger = logging.getLogger(__name__)

_INTEGER = re.compile(r"[+-]?[0-9]+")


@dataclass
class Group:
    """One group entry: its id, name and member user names."""

    id: str
    name: str
    members: list[str] = field(default_factory=list)


def local_groups(lines: Iterable[str]) -> list[Group]:
    """Parse lines in /etc/group form, skipping blanks, comments and bad ids."""
    groups = []
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(":", 3)
        if len(parts) < 4 or not _INTEGER.fullmatch(parts[2]):
            continue
        groups.append(Group(id=parts[2], name=parts[0], members=parts[3].split(",")))
    return groups


def group_ids(username: str, gid: str, group_file: str = "/etc/group") -> list[str]:
    """All group ids of a user: the primary ``gid`` then secondary groups."""
    logger.info("Performing slow lookup of group ids for %s", username)
    if gid == "":
        return []
    with open(group_file, encoding="utf-8") as handle:
        groups = local_groups(handle)
    return [gid] + [g.id for g in groups for member in g.members if member == username]