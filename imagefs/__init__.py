"""Filesystem helpers for building container image layers."""

__version__ = "1.9.2"

__all__ = [
    "commands",
    "context",
    "fileops",
    "groups",
    "layered_map",
    "layers",
    "paths",
    "timing",
]