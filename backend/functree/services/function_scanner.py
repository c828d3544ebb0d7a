"""
Function scanner -- discovers every function in a function tree.

A function is any directory (below the root) that contains an entry
module such as index.py or index.ts. The tree may mix layouts freely:

    functions/
        .env                          <- project-level env vars
        hello/index.ts                <- legacy, flat layout
        api/auth/login/index.ts       <- nested layout
        api/auth/login/.env           <- function-level env vars
        utils/validation/user-validator/index.ts
        docs/README.md                <- not a function, silently skipped

For each function the scanner records:
1. Its path relative to the root (the key everything else uses)
2. Its layered environment (via EnvironmentLoader)
3. A best-effort list of other functions it imports

Dependency detection is a text heuristic, not a parser. It finds static
relative imports in the entry module ("import x from '../../utils/y'",
"require('./y')") and explicit "# functree: depends <ref>" lines. Imports
built at runtime or re-exported through another module are missed.

A "./" import that names a file or directory inside the function's own
directory (hello/index.ts importing "./utils.ts") is a private helper,
not a call to the sibling function "utils".
"""

import logging
import os
import re
from pathlib import Path

from functree.config import ENTRY_MODULES
from functree.models import (
    FunctionDependency,
    FunctionMetadata,
    FunctionRegistry,
    function_id_for,
)
from functree.services.environment_loader import EnvironmentLoader
from functree.services.paths import PathResolutionError, resolve_reference, to_posix

logger = logging.getLogger(__name__)

# Version control and dependency caches never contain functions.
SKIP_DIRS = frozenset({".git", "node_modules", ".deno", "__pycache__", ".venv", "venv"})

# Static relative imports: ES module imports (with or without bindings)
# and CommonJS require() calls.
IMPORT_PATTERNS = (
    re.compile(r"""\bimport\s[^'"`;]*?\bfrom\s+['"](\.\.?/[^'"]+)['"]"""),
    re.compile(r"""\bimport\s+['"](\.\.?/[^'"]+)['"]"""),
    re.compile(r"""\brequire\(\s*['"](\.\.?/[^'"]+)['"]\s*\)"""),
)

# Explicit declarations, usable from any language with "#" comments.
DECLARED_PATTERN = re.compile(r"^\s*#\s*functree:\s*depends\s+(\S+)\s*$", re.MULTILINE)

# Extensions stripped when an import names a file rather than a directory.
SOURCE_EXTENSIONS = (".py", ".ts", ".tsx", ".js", ".mjs", ".cjs")


class ScanError(Exception):
    """The function tree root could not be traversed."""


class FunctionScanner:
    """Walks a function tree and returns metadata for every function found."""

    def __init__(self, entry_modules: tuple[str, ...] = ENTRY_MODULES, env_loader: EnvironmentLoader | None = None):
        self.entry_modules = entry_modules
        self.env_loader = env_loader

    def scan(self, root_path: str | Path) -> list[FunctionMetadata]:
        """
        Scan root_path and return one FunctionMetadata per function.

        Raises ScanError if the root (or anything below it) can't be read.
        Nothing partial is returned in that case. Output order is not
        meaningful.
        """
        root = Path(root_path).resolve()
        if not root.is_dir():
            raise ScanError(f"Failed to scan functions: '{root_path}' is not a readable directory")

        env_loader = self.env_loader or EnvironmentLoader(root)

        try:
            function_dirs = self._find_function_dirs(root)
        except OSError as exc:
            logger.error("Error scanning functions in %s: %s", root_path, exc)
            raise ScanError(f"Failed to scan functions: {exc}") from exc

        known_paths = {relative_path for relative_path, _, _ in function_dirs}

        functions = []
        for relative_path, function_dir, entry_module in function_dirs:
            metadata = FunctionMetadata(
                id=function_id_for(relative_path),
                name=relative_path,
                path=str(function_dir),
                relative_path=relative_path,
                entry_module=entry_module,
                environment_config=env_loader.load(function_dir),
                dependencies=self._detect_dependencies(
                    root, relative_path, function_dir / entry_module, known_paths
                ),
            )
            functions.append(metadata)

        logger.info("Scanned %s: found %d functions", root, len(functions))
        return functions

    def scan_registry(self, root_path: str | Path) -> FunctionRegistry:
        """Scan and wrap the result in a fresh read-only registry."""
        return FunctionRegistry(self.scan(root_path))

    def validate_function_structure(self, function_path: str | Path) -> bool:
        """A directory is a function iff it holds a recognized entry module."""
        return self._entry_module(Path(function_path)) is not None

    def _entry_module(self, function_dir: Path) -> str | None:
        for name in self.entry_modules:
            if (function_dir / name).is_file():
                return name
        return None

    def _find_function_dirs(self, root: Path) -> list[tuple[str, Path, str]]:
        def raise_error(exc: OSError):
            raise exc

        found = []
        for dirpath, dirnames, _ in os.walk(root, onerror=raise_error):
            # Prune in place so os.walk never descends into skipped dirs
            dirnames[:] = sorted(
                d for d in dirnames if d not in SKIP_DIRS and not d.startswith(".")
            )
            current = Path(dirpath)
            if current == root:
                continue

            entry_module = self._entry_module(current)
            if entry_module is None:
                continue
            found.append((to_posix(os.path.relpath(current, root)), current, entry_module))
        return found

    def _detect_dependencies(
        self,
        root: Path,
        relative_path: str,
        entry_path: Path,
        known_paths: set[str],
    ) -> list[FunctionDependency]:
        try:
            content = entry_path.read_text(encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.error("Error detecting dependencies for %s: %s", relative_path, exc)
            return []

        references: list[tuple[str, str]] = []
        for pattern in IMPORT_PATTERNS:
            references.extend((ref, "import") for ref in pattern.findall(content))
        references.extend((ref, "shared") for ref in DECLARED_PATTERN.findall(content))

        dependencies: dict[str, FunctionDependency] = {}
        function_dir = entry_path.parent
        for ref, dependency_type in references:
            # A file that exists next to the entry module (hello/utils.ts) wins
            # over the parent-anchored reading of the same reference
            resolved = self._local_target(root, function_dir, ref)
            if resolved is None:
                try:
                    resolved = resolve_reference(root, relative_path, ref)
                except PathResolutionError:
                    logger.debug("Ignoring import %r in %s: outside the function tree", ref, relative_path)
                    continue

            target = self._owning_function(resolved, known_paths)
            if target == relative_path:
                # Imports of the function's own files are not dependencies
                continue
            if target not in dependencies:
                dependencies[target] = FunctionDependency(
                    target_function=target,
                    target_path=str(root / target),
                    dependency_type=dependency_type,
                )
        return list(dependencies.values())

    @staticmethod
    def _local_target(root: Path, function_dir: Path, ref: str) -> str | None:
        """
        Root-relative path of a "./" reference that exists inside function_dir
        itself (as written, or with a source extension), else None.
        """
        if not ref.startswith("./"):
            return None
        local = Path(os.path.normpath(function_dir / ref))
        if function_dir not in local.parents:
            return None
        if local.exists() or any(local.with_name(local.name + ext).is_file() for ext in SOURCE_EXTENSIONS):
            return to_posix(os.path.relpath(local, root))
        return None

    @staticmethod
    def _owning_function(resolved: str, known_paths: set[str]) -> str:
        """
        Map an import target to the function that contains it.

        "utils/x/index.ts" and "utils/x.ts" both map to "utils/x" if that is
        a function. Targets that match no function keep their extensionless
        path so they show up as dangling dependencies later.
        """
        stem = resolved
        for ext in SOURCE_EXTENSIONS:
            if stem.endswith(ext):
                stem = stem[: -len(ext)]
                break

        parts = stem.split("/")
        for end in range(len(parts), 0, -1):
            candidate = "/".join(parts[:end])
            if candidate in known_paths:
                return candidate
        return stem
