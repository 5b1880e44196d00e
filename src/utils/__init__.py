"""
DevStack Utility Modules

Filesystem helpers shared by the install pipeline, the supervisor and the
configuration layer.
"""

from .fs_ops import (
    atomic_write_text,
    atomic_write_json,
    iter_files,
    find_by_name,
    remove_file,
    remove_tree,
    to_forward_slashes,
)

__all__ = [
    "atomic_write_text",
    "atomic_write_json",
    "iter_files",
    "find_by_name",
    "remove_file",
    "remove_tree",
    "to_forward_slashes",
]
