"""
Handler loader -- maps functions to the callables that serve them.

Handlers can be registered up front (a lookup table built at registration
time), or loaded lazily from a function's entry module. Lazy loading goes
through the same sandbox rule as path resolution: the entry module's real
path, symlinks followed, must sit inside the function tree before anything
is imported from it.

A handler follows the runtime contract:

    def handler(request):            # or handler(request, context)
        return {"ok": True}          # anything JSON-serializable, or
                                     # an httpx.Response

async def handlers are awaited; plain ones run in a worker thread.
"""

import importlib.util
import inspect
import logging
import threading
from collections.abc import Callable
from pathlib import Path

from functree.models import FunctionMetadata
from functree.services.paths import ensure_within_root

logger = logging.getLogger(__name__)

HANDLER_NAME = "handler"

# Entry modules we can import in-process.
EXECUTABLE_SUFFIXES = (".py",)


class HandlerLoadError(Exception):
    """The entry module is missing, unloadable or defines no handler."""


class EntryModuleNotFoundError(HandlerLoadError):
    """The function has no entry module on disk (anymore)."""


class UnsupportedRuntimeError(HandlerLoadError):
    """The entry module exists but isn't something this runtime can execute."""


class HandlerLoader:
    """Lookup table from relative function path to handler callable."""

    def __init__(self, root_path: str | Path):
        self.root = Path(root_path).resolve()
        self._handlers: dict[str, Callable] = {}
        self._lock = threading.Lock()

    def register(self, relative_path: str, handler: Callable) -> None:
        """Bind a callable to a function without touching the filesystem."""
        with self._lock:
            self._handlers[relative_path] = handler

    def forget(self, relative_path: str | None = None) -> None:
        """Drop one cached handler, or all of them (e.g. after a rescan)."""
        with self._lock:
            if relative_path is None:
                self._handlers.clear()
            else:
                self._handlers.pop(relative_path, None)

    def get(self, metadata: FunctionMetadata) -> Callable:
        with self._lock:
            handler = self._handlers.get(metadata.relative_path)
        if handler is not None:
            return handler

        handler = self._load_from_entry_module(metadata)
        with self._lock:
            self._handlers.setdefault(metadata.relative_path, handler)
            return self._handlers[metadata.relative_path]

    def _load_from_entry_module(self, metadata: FunctionMetadata) -> Callable:
        entry_path = self.root / metadata.relative_path / metadata.entry_module
        real_path = ensure_within_root(self.root, entry_path)

        if not real_path.is_file():
            raise EntryModuleNotFoundError(f"Function entry point not found for '{metadata.relative_path}'")
        if real_path.suffix not in EXECUTABLE_SUFFIXES:
            raise UnsupportedRuntimeError(
                f"Entry module '{metadata.entry_module}' of '{metadata.relative_path}' "
                "cannot be executed by the Python runtime"
            )

        module_name = f"functree_fn_{metadata.id}"
        spec = importlib.util.spec_from_file_location(module_name, real_path)
        if spec is None or spec.loader is None:
            raise HandlerLoadError(f"Could not load entry module for '{metadata.relative_path}'")

        module = importlib.util.module_from_spec(spec)
        try:
            spec.loader.exec_module(module)
        except Exception as exc:
            raise HandlerLoadError(f"Failed to load function '{metadata.relative_path}': {exc}") from exc

        handler = getattr(module, HANDLER_NAME, None)
        if not callable(handler):
            raise HandlerLoadError(
                f"Function '{metadata.relative_path}' does not define a {HANDLER_NAME}() function"
            )

        logger.info("Loaded handler for %s from %s", metadata.relative_path, real_path)
        return handler


def accepts_context(handler: Callable) -> bool:
    """Detect handler(request) vs handler(request, context)."""
    try:
        return len(inspect.signature(handler).parameters) >= 2
    except (ValueError, TypeError):
        return False
