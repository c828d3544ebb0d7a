"""
Functions manager -- owns one function tree and everything built from it.

This is the single entry point the HTTP layer (and any deployment tool)
talks to. It coordinates:
1. FunctionScanner -- discover functions, build the registry
2. DependencyResolver -- deployment order and graph validation
3. CrossDirectoryResolver -- sandboxed references and invocation proxies
4. NamespaceManager -- per-project identities, env vars, credentials
5. SecurityManager -- final allow/deny before anything runs

Lifecycle: construct -> initialize() (scan) -> query/invoke -> discard.
A rescan builds a brand new registry and dependency graph and swaps them
in; nothing already handed out is mutated.
"""

import asyncio
import logging
import threading
from pathlib import Path
from typing import Protocol

import httpx

from functree.config import INVOKE_TIMEOUT_SECONDS, NAMESPACE_PREFIX
from functree.models import (
    DeploymentOrder,
    DeploymentPlan,
    DeploymentPlanEntry,
    DeploymentResult,
    FunctionInstance,
    FunctionMetadata,
    FunctionRegistry,
    ProjectCredentials,
    ProjectNamespace,
    ValidationResult,
)
from functree.services.context import resolve_context, resolve_environment
from functree.services.cross_directory_resolver import (
    CrossDirectoryResolver,
    failure_response,
)
from functree.services.dependency_resolver import DependencyResolver
from functree.services.environment_loader import EnvironmentLoader
from functree.services.function_scanner import FunctionScanner
from functree.services.handler_loader import HandlerLoader
from functree.services.namespace_manager import NamespaceManager
from functree.services.paths import PathResolutionError
from functree.services.security_manager import ProjectSecurityManager, SecurityManager

logger = logging.getLogger(__name__)


class DeploymentService(Protocol):
    """The remote deployment API. Receives one entry per function, in order."""

    async def deploy(self, entry: DeploymentPlanEntry) -> DeploymentResult: ...


class FunctionsManager:
    """Coordinator for one function tree and its project namespaces."""

    def __init__(
        self,
        root_path: str | Path,
        namespace_prefix: str = NAMESPACE_PREFIX,
        security_manager: SecurityManager | None = None,
        scanner: FunctionScanner | None = None,
        invoke_timeout: float = INVOKE_TIMEOUT_SECONDS,
    ):
        self.root = Path(root_path).resolve()
        self.scanner = scanner or FunctionScanner()
        self.handler_loader = HandlerLoader(self.root)
        self.resolver = CrossDirectoryResolver(
            self.root, handler_loader=self.handler_loader, invoke_timeout=invoke_timeout
        )
        self.dependency_resolver = DependencyResolver()
        self.namespaces = NamespaceManager(namespace_prefix)
        self.security = security_manager or ProjectSecurityManager(namespace_prefix)

        self._registry = FunctionRegistry()
        self._secured_projects: set[str] = set()
        self._security_lock = threading.Lock()

    @property
    def registry(self) -> FunctionRegistry:
        return self._registry

    async def initialize(self) -> FunctionRegistry:
        """
        Scan the tree and install the result.

        ScanError propagates: an unreadable root aborts the whole run and
        the previous registry (if any) stays in place.
        """
        # The scan is blocking filesystem work; keep it off the event loop
        functions = await asyncio.to_thread(self.scanner.scan, self.root)
        self._install(functions)
        logger.info("Initialized functions manager for %s with %d functions", self.root, len(functions))
        return self._registry

    rescan = initialize

    def _install(self, functions: list[FunctionMetadata]) -> None:
        registry = FunctionRegistry(functions)
        dependency_resolver = DependencyResolver()
        dependency_resolver.build_graph(functions)

        self._registry = registry
        self.dependency_resolver = dependency_resolver
        self.resolver.update_registry(registry)
        self.handler_loader.forget()

    def get_function(self, function_ref: str) -> FunctionMetadata | None:
        return self._registry.lookup(function_ref)

    def deployment_order(self) -> DeploymentOrder:
        return self.dependency_resolver.calculate_deployment_order()

    def validate(self) -> ValidationResult:
        """Collect every problem in one pass: graph, env files, namespaces."""
        result = self.dependency_resolver.validate_dependency_graph()

        env_warnings = []
        for fn in self._registry.values():
            env_result = EnvironmentLoader.validate(fn.environment_config)
            env_warnings.extend(f"{fn.relative_path}: {w}" for w in env_result.warnings)
        result = result.merge(ValidationResult.from_messages([], env_warnings))

        return result.merge(self.namespaces.validate())

    # --- Projects ---

    def bind_project(
        self,
        project_ref: str,
        credentials: ProjectCredentials | None = None,
        env_vars: dict[str, str] | None = None,
    ) -> ProjectNamespace:
        """
        Create the project's namespace and register every scanned function in it.

        Safe to call again after a rescan: existing instances are refreshed
        and new functions are added.
        """
        namespace = self.namespaces.create_namespace(project_ref)
        if credentials is not None:
            self.namespaces.update_credentials(project_ref, credentials)
        if env_vars is not None:
            self.namespaces.set_environment(project_ref, env_vars)

        for fn in self._registry.values():
            self.namespaces.register_instance(FunctionInstance(
                id=fn.id,
                name=fn.relative_path,
                path=fn.path,
                relative_path=fn.relative_path,
                project_ref=project_ref,
                namespaced_id=self.namespaces.isolate(fn.relative_path, project_ref),
            ))

        self._ensure_security(project_ref)
        return namespace

    def remove_project(self, project_ref: str) -> bool:
        removed = self.namespaces.remove_namespace(project_ref)
        with self._security_lock:
            self._secured_projects.discard(project_ref)
        revoke = getattr(self.security, "revoke_project", None)
        if callable(revoke):
            revoke(project_ref)
        return removed

    def _ensure_security(self, project_ref: str) -> None:
        """Initialize the project's permissions exactly once, before its first check."""
        with self._security_lock:
            if project_ref in self._secured_projects:
                return
            self.security.initialize_project_permissions(project_ref)
            self._secured_projects.add(project_ref)

    async def authorize(self, function_ref: str, project_ref: str) -> str | None:
        """
        Return the namespaced id if project_ref may run function_ref, else None.

        Both the namespace table and the security manager must agree. A
        denial is logged and final; it is never retried.
        """
        metadata = self._registry.lookup(function_ref)
        if metadata is None:
            return None

        namespaced_id = self.namespaces.namespaced_id(metadata.relative_path, project_ref)
        if not self.namespaces.validate_access(namespaced_id, project_ref):
            logger.warning("Namespace denied %s for project %s", namespaced_id, project_ref)
            return None

        self._ensure_security(project_ref)
        if not await self.security.validate_project_access(namespaced_id, project_ref):
            logger.warning("Security manager denied %s for project %s", namespaced_id, project_ref)
            return None

        return namespaced_id

    # --- Invocation ---

    async def invoke(
        self,
        project_ref: str,
        function_ref: str,
        payload: object,
        headers: dict[str, str] | None = None,
        caller: str | None = None,
        timeout: float | None = None,
    ) -> httpx.Response:
        """
        Invoke a function on behalf of a project.

        With caller set, function_ref is resolved relative to the caller and
        the call must pass validate_call. caller may be a legacy short name;
        it is mapped to its function before anything is resolved against it.
        Every outcome is a response: 400 for sandbox violations, 404 for
        unknown functions (caller or target), 403 for denied calls,
        otherwise whatever the proxy returns.
        """
        caller_path = ""
        if caller is not None:
            caller_meta = self.resolver.get_function_metadata(caller)
            if caller_meta is None:
                return failure_response(404, f"Caller function '{caller}' not found", function_ref)
            caller_path = caller_meta.relative_path

        try:
            target = self.resolver.resolve_path(caller_path, function_ref)
        except PathResolutionError as exc:
            return failure_response(400, str(exc), function_ref)

        metadata = self._registry.lookup(target)
        if metadata is None:
            return failure_response(404, f"Target function '{function_ref}' not found", function_ref)

        if caller is not None and not self.resolver.validate_call(caller_path, metadata.relative_path):
            return failure_response(403, f"Call from '{caller_path}' to '{target}' is not permitted", target)

        if await self.authorize(metadata.relative_path, project_ref) is None:
            return failure_response(
                403, f"Access denied for '{target}' in project '{project_ref}'", target
            )

        context = resolve_context(
            project_ref,
            metadata=metadata,
            namespace=self.namespaces.get_namespace(project_ref),
            headers=headers,
        )
        proxy = self.resolver.create_proxy(metadata.relative_path)
        return await proxy.invoke(payload, context, timeout=timeout)

    # --- Deployment ---

    def validate_deployment_target(self, project_ref: str) -> ValidationResult:
        """
        A project can only be deployed to once it is bound and has the
        credentials the deployment API needs: a service role key and a base URL.
        """
        namespace = self.namespaces.get_namespace(project_ref)
        if namespace is None:
            return ValidationResult.from_messages([f"Project namespace not found: {project_ref}"], [])

        errors = []
        credentials = namespace.credentials
        if not credentials.service_role_key:
            errors.append(f"Missing service role key for project {project_ref}")
        if not credentials.base_url:
            errors.append(f"Missing base URL for project {project_ref}")

        warnings = []
        if not credentials.anon_key:
            warnings.append(f"Missing anon key for project {project_ref}")
        return ValidationResult.from_messages(errors, warnings)

    def plan_deployment(self, project_ref: str) -> DeploymentPlan:
        """
        Produce what the deployment service needs, in dependency order.

        A cyclic graph or an invalid deployment target yields a plan with
        no entries; the cycles and target errors are listed instead.
        """
        order = self.deployment_order()
        target = self.validate_deployment_target(project_ref)
        if not order.ok or not target.is_valid:
            return DeploymentPlan(project_ref=project_ref, cycles=order.cycles, errors=target.errors)

        namespace = self.namespaces.get_namespace(project_ref)
        entries = []
        for position, relative_path in enumerate(order.functions):
            metadata = self._registry[relative_path]
            entries.append(DeploymentPlanEntry(
                position=position,
                relative_path=relative_path,
                namespaced_id=self.namespaces.namespaced_id(relative_path, project_ref),
                project_ref=project_ref,
                base_url=namespace.credentials.base_url,
                environment=resolve_environment(metadata, namespace),
            ))
        return DeploymentPlan(project_ref=project_ref, entries=entries, batches=order.batches)

    async def deploy(self, project_ref: str, service: DeploymentService) -> list[DeploymentResult]:
        """
        Hand every plan entry to service, in order.

        A failed function doesn't stop the run, but functions depending on
        it are skipped and reported, so one run surfaces every problem.
        """
        plan = self.plan_deployment(project_ref)
        if not plan.ok:
            for cycle in plan.cycles:
                logger.error("Cannot deploy %s: circular dependency %s", project_ref, " -> ".join(cycle.cycle))
            for error in plan.errors:
                logger.error("Cannot deploy %s: %s", project_ref, error)
            return []

        results = []
        failed: set[str] = set()
        for entry in plan.entries:
            blocked = [
                dep for dep in self.dependency_resolver.get_direct_dependencies(entry.relative_path)
                if dep in failed
            ]
            if blocked:
                failed.add(entry.relative_path)
                results.append(DeploymentResult(
                    success=False,
                    relative_path=entry.relative_path,
                    project_ref=project_ref,
                    error=f"Skipped: dependency {', '.join(blocked)} failed to deploy",
                ))
                continue

            try:
                result = await service.deploy(entry)
            except Exception as exc:
                logger.error("Deployment of %s to %s failed: %s", entry.relative_path, project_ref, exc)
                result = DeploymentResult(
                    success=False,
                    relative_path=entry.relative_path,
                    project_ref=project_ref,
                    error=f"Deployment error: {exc}",
                )

            if not result.success:
                failed.add(entry.relative_path)
            results.append(result)

        logger.info(
            "Deployed %d/%d functions to %s",
            len(results) - len(failed), len(results), project_ref,
        )
        return results
