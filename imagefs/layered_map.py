"""Track added and deleted files layer by layer."""

from __future__ import annotations

import hashlib
import json
from typing import Callable

from imagefs import timing

Hasher = Callable[[str], str]


def _go_json_line(value: object) -> str:
    text = json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    for char, escaped in (("&", "\\u0026"), ("<", "\\u003c"), (">", "\\u003e"),
                          ("\u2028", "\\u2028"), ("\u2029", "\\u2029")):
        text = text.replace(char, escaped)
    return text + "\n"


class LayeredMap:
    """Layers of added files with their hashes and of deleted files."""

    def __init__(self, hasher: Hasher) -> None:
        self._hasher = hasher
        self._adds: list[dict[str, str]] = []
        self._deletes: list[set[str]] = []
        self._current_image: dict[str, str] = {}
        self._image_valid = False
        self._layer_hash_cache: dict[str, str] = {}

    def snapshot(self) -> None:
        """Fold the top layer into the current image and open a new layer."""
        self._update_current_image()
        self._adds.append({})
        self._deletes.append(set())
        self._layer_hash_cache = {}

    def key(self) -> str:
        """A hash of the files added and deleted in the top layer."""
        if self._adds:
            adds: object = self._adds[-1]
            deletes: object = {path: {} for path in self._deletes[-1]}
        else:
            adds = deletes = None
        encoded = _go_json_line(adds) + _go_json_line(deletes)
        return hashlib.sha256(encoded.encode("utf-8")).hexdigest()

    def _merged_image(self) -> dict[str, str]:
        if self._image_valid or not self._adds:
            return self._current_image
        current = dict(self._current_image)
        current.update(self._adds[-1])
        for path in self._deletes[-1]:
            current.pop(path, None)
        return current

    def _update_current_image(self) -> None:
        if self._image_valid:
            return
        self._current_image = self._merged_image()
        self._image_valid = True

    def get_current_paths(self) -> set[str]:
        """All paths present in the image including the top layer."""
        return set(self._merged_image())

    def add_delete(self, path: str) -> None:
        """Mark ``path`` as deleted in the top layer."""
        self._image_valid = False
        self._deletes[-1].add(path)

    def add(self, path: str) -> None:
        """Add ``path`` with its hash to the top layer."""
        self._image_valid = False
        cached = self._layer_hash_cache.get(path)
        if cached is None:
            try:
                cached = self._hasher(path)
            except Exception as exc:
                raise RuntimeError(f"Error creating hash for {path}: {exc}") from exc
        self._adds[-1][path] = cached

    def check_file_change(self, path: str) -> bool:
        """Whether ``path`` differs from the image before the top layer."""
        timer = timing.start("Hashing files")
        try:
            new_hash = self._hasher(path)
            self._layer_hash_cache[path] = new_hash
            old_hash = self._current_image.get(path)
            return old_hash is None or old_hash != new_hash
        finally:
            timing.DEFAULT_RUN.stop(timer)