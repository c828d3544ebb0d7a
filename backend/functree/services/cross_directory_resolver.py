"""
Cross-directory resolver -- lets one function call another safely.

Three jobs:
1. resolve_path: turn a reference written inside a function ("../../utils/x",
   "/billing", "billing") into a root-relative path, rejecting anything that
   would leave the function tree
2. validate_call: decide whether caller may invoke target (both must exist,
   no self-calls, no call that would close a dependency cycle)
3. create_proxy: build a FunctionProxy whose invoke() runs the target's
   handler and ALWAYS returns an httpx.Response, success or failure

The resolver only reads the registry. A rescan hands it a new registry
via update_registry() instead of mutating the old one.
"""

import asyncio
import inspect
import json
import logging
import time
from collections import deque
from pathlib import Path

import httpx

from functree.config import INVOKE_TIMEOUT_SECONDS
from functree.models import FunctionMetadata, FunctionRegistry
from functree.services.context import ExecutionContext
from functree.services.handler_loader import (
    EntryModuleNotFoundError,
    HandlerLoader,
    UnsupportedRuntimeError,
    accepts_context,
)
from functree.services.paths import (
    PathResolutionError,
    normalize_function_path,
    resolve_reference,
)

logger = logging.getLogger(__name__)


class FunctionNotFoundError(LookupError):
    """The target isn't in the current registry."""


def failure_response(status_code: int, message: str, target: str) -> httpx.Response:
    """The structured error every failed invocation is converted into."""
    return httpx.Response(
        status_code,
        json={
            "error": "Function invocation failed",
            "message": message,
            "target": target,
        },
    )


class FunctionProxy:
    """
    Invocation handle for one target function.

    invoke() never raises (except on cancellation): loading errors, handler
    exceptions and deadline overruns all come back as a failure response.
    """

    def __init__(self, resolver: "CrossDirectoryResolver", target: str):
        self.resolver = resolver
        self.target = target

    async def invoke(
        self,
        payload: object,
        context: ExecutionContext,
        timeout: float | None = None,
    ) -> httpx.Response:
        """
        Run the target's handler with a request built from payload.

        timeout overrides the resolver's default deadline (seconds); 0 or a
        negative value means no deadline.
        """
        deadline = self.resolver.invoke_timeout if timeout is None else timeout
        start_time = time.time()

        try:
            response = await self._invoke(payload, context, deadline)
        except FunctionNotFoundError as exc:
            return failure_response(404, str(exc), self.target)
        except EntryModuleNotFoundError as exc:
            return failure_response(404, str(exc), self.target)
        except UnsupportedRuntimeError as exc:
            return failure_response(501, str(exc), self.target)
        except PathResolutionError as exc:
            logger.warning("Sandbox violation invoking %s: %s", self.target, exc)
            return failure_response(403, str(exc), self.target)
        except asyncio.TimeoutError:
            logger.error("Invocation of %s timed out after %ss", self.target, deadline)
            return failure_response(504, f"Function timed out after {deadline} seconds", self.target)
        except Exception as exc:
            logger.error("Error invoking function %s: %s", self.target, exc)
            return failure_response(500, str(exc), self.target)

        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            "Invoked %s for project %s (request %s): %d in %dms",
            self.target, context.project_ref, context.request_id,
            response.status_code, duration_ms,
        )
        return response

    async def _invoke(self, payload: object, context: ExecutionContext, deadline: float) -> httpx.Response:
        metadata = self.resolver.get_function_metadata(self.target)
        if metadata is None:
            raise FunctionNotFoundError(f"Target function '{self.target}' not found")

        handler = self.resolver.handler_loader.get(metadata)

        headers = dict(context.headers)
        headers.setdefault("x-request-id", context.request_id)
        request = httpx.Request(
            "POST",
            f"http://localhost/{metadata.relative_path}",
            headers=headers,
            json=payload,
        )

        args = (request, context) if accepts_context(handler) else (request,)
        if inspect.iscoroutinefunction(handler):
            call = handler(*args)
        else:
            # Sync handlers run in a worker thread; a thread can't be killed,
            # so on timeout it finishes in the background and its result is dropped.
            call = asyncio.to_thread(handler, *args)

        if deadline and deadline > 0:
            result = await asyncio.wait_for(call, timeout=deadline)
        else:
            result = await call

        return self._to_response(result)

    @staticmethod
    def _to_response(result: object) -> httpx.Response:
        if isinstance(result, httpx.Response):
            return result
        # json.dumps first so a non-serializable result fails loudly here
        body = json.dumps(result)
        return httpx.Response(200, content=body, headers={"content-type": "application/json"})


class CrossDirectoryResolver:
    """Resolves, validates and proxies calls between functions of one tree."""

    def __init__(
        self,
        root_path: str | Path,
        registry: FunctionRegistry | None = None,
        handler_loader: HandlerLoader | None = None,
        invoke_timeout: float = INVOKE_TIMEOUT_SECONDS,
    ):
        self.root = Path(root_path).resolve()
        self._registry = registry if registry is not None else FunctionRegistry()
        self.handler_loader = handler_loader or HandlerLoader(self.root)
        self.invoke_timeout = invoke_timeout

    @property
    def registry(self) -> FunctionRegistry:
        return self._registry

    def update_registry(self, registry: FunctionRegistry) -> None:
        """Swap in a freshly scanned registry in one assignment."""
        self._registry = registry

    def resolve_path(self, from_function: str, target_ref: str) -> str:
        """
        Resolve target_ref, written inside from_function, to a root-relative path.

        from_function may be a legacy short name ("login"); relative
        references are then anchored at the function it names, not at the
        tree root.

        Raises PathResolutionError if the reference is a system path or
        resolves outside the function tree. Only the caller is looked up
        before that check passes, never the target.
        """
        caller = self._canonical(from_function) if from_function else from_function
        try:
            return resolve_reference(self.root, caller, target_ref)
        except PathResolutionError as exc:
            logger.warning("Rejected reference from %r to %r: %s", from_function, target_ref, exc)
            raise PathResolutionError(
                f"Failed to resolve function path from '{from_function}' to '{target_ref}': {exc}"
            ) from exc

    def validate_call(self, caller: str, target: str) -> bool:
        """Check that caller may invoke target. Never raises."""
        caller_meta = self.get_function_metadata(caller)
        target_meta = self.get_function_metadata(target)

        if caller_meta is None:
            logger.warning("Caller function '%s' not found in registry", caller)
            return False
        if target_meta is None:
            logger.warning("Target function '%s' not found in registry", target)
            return False

        if caller_meta.relative_path == target_meta.relative_path:
            logger.warning("Function '%s' attempted to call itself", caller_meta.relative_path)
            return False

        if self._depends_on(target_meta.relative_path, caller_meta.relative_path):
            logger.warning(
                "Circular dependency detected between '%s' and '%s'",
                caller_meta.relative_path, target_meta.relative_path,
            )
            return False

        return True

    def create_proxy(self, target_function: str) -> FunctionProxy:
        """
        Build a proxy for target_function.

        Lookup happens at invoke time, so a proxy made before a rescan
        sees the new registry.
        """
        return FunctionProxy(self, normalize_function_path(self.root, target_function))

    def get_function_metadata(self, function_path: str) -> FunctionMetadata | None:
        return self._registry.lookup(normalize_function_path(self.root, function_path))

    def get_dependent_functions(self, function_path: str) -> list[str]:
        """Functions that declare a dependency on function_path."""
        target = self._canonical(function_path)
        return sorted(
            fn.relative_path
            for fn in self._registry.values()
            if any(dep.target_function == target for dep in fn.dependencies)
        )

    def get_function_dependencies(self, function_path: str) -> list[str]:
        metadata = self.get_function_metadata(function_path)
        if metadata is None:
            return []
        return [dep.target_function for dep in metadata.dependencies]

    def _canonical(self, function_path: str) -> str:
        normalized = normalize_function_path(self.root, function_path)
        return self._registry.resolve_alias(normalized) or normalized

    def _depends_on(self, source: str, target: str) -> bool:
        """True if source reaches target through registry dependencies."""
        seen = {source}
        queue = deque([source])
        while queue:
            metadata = self._registry.get(queue.popleft())
            if metadata is None:
                continue
            for dep in metadata.dependencies:
                if dep.target_function == target:
                    return True
                if dep.target_function not in seen:
                    seen.add(dep.target_function)
                    queue.append(dep.target_function)
        return False
