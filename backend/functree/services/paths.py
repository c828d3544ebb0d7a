"""
Sandboxed path resolution for references between functions.

A function refers to another function with a string reference:
    "./sibling"                  -> next to the caller's own directory
    "../../utils/validation/x"   -> relative to the caller's parent directory
    "/utils/validation/x"        -> root-relative, inside the function tree
    "billing"                    -> directly under the tree root

Whatever the form, the result must stay inside the function tree. This
check runs before any registry or filesystem lookup: a crafted reference
like "../../../etc/passwd" is rejected here, not after opening something.
"""

import os
from pathlib import Path

# Absolute references under these prefixes are rejected outright, even
# though they would be re-rooted into the function tree.
SYSTEM_PATH_PREFIXES = ("/etc/", "/usr/", "/var/", "/home/", "/root/", "/tmp/")


class PathResolutionError(ValueError):
    """A reference that escapes the function tree or is otherwise unusable."""


def to_posix(path: str) -> str:
    return path.replace(os.sep, "/")


def normalize_function_path(root: Path, function_path: str) -> str:
    """Turn an absolute function path into a root-relative one; leave others alone."""
    if os.path.isabs(function_path):
        return to_posix(os.path.relpath(function_path, root))
    return to_posix(function_path).strip("/")


def is_escape(relative_path: str) -> bool:
    """True if a root-relative path leaves the root."""
    return (
        os.path.isabs(relative_path)
        or relative_path == ".."
        or relative_path.startswith("../")
        or relative_path.startswith(".." + os.sep)
    )


def resolve_reference(root: Path, from_function: str, target_ref: str) -> str:
    """
    Resolve target_ref, as written inside from_function, to a root-relative path.

    Raises PathResolutionError for empty references, system paths and any
    result outside the root.
    """
    if not target_ref or "\x00" in target_ref:
        raise PathResolutionError(f"Invalid target function reference {target_ref!r}")

    root = Path(root)
    ref = to_posix(target_ref)

    if ref.startswith("./") or ref.startswith("../"):
        caller_dir = os.path.join(root, normalize_function_path(root, from_function))
        resolved = os.path.normpath(os.path.join(os.path.dirname(caller_dir), ref))
    elif ref.startswith("/"):
        if ref.startswith(SYSTEM_PATH_PREFIXES):
            raise PathResolutionError(f"Target function path '{target_ref}' is a system path")
        resolved = os.path.normpath(os.path.join(root, ref.lstrip("/")))
    else:
        resolved = os.path.normpath(os.path.join(root, ref))

    relative_path = os.path.relpath(resolved, root)
    if is_escape(relative_path):
        raise PathResolutionError(
            f"Target function path '{target_ref}' resolves outside functions directory"
        )
    if relative_path == ".":
        raise PathResolutionError(f"Target function path '{target_ref}' resolves to the functions root")

    return to_posix(relative_path)


def ensure_within_root(root: Path, path: Path) -> Path:
    """
    Re-check a concrete filesystem path against the root, following symlinks.

    Used right before loading code from disk, so a symlink planted inside the
    tree can't point the loader somewhere else.
    """
    real_root = Path(os.path.realpath(root))
    real_path = Path(os.path.realpath(path))
    if real_path != real_root and real_root not in real_path.parents:
        raise PathResolutionError(f"Path '{path}' resolves outside functions directory")
    return real_path
