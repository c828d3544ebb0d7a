"""
Namespace manager -- per-project isolation for functions.

Every project ("tenant") gets exactly one ProjectNamespace holding its
function instances, its environment variables and its credentials. A
function bound to a project gets a namespaced id:

    isolate("billing", "proj1")  ->  "ef_proj1_billing"
    isolate("billing", "proj2")  ->  "ef_proj2_billing"

The id is a pure function of (prefix, project, name), so recomputing it
always yields the same string.

Besides the namespaces, the manager keeps a flat id -> project table so
access checks are a single dict lookup no matter which namespace owns the
record. Removing a namespace scrubs that table too, leaving no stale grants.

All mutations go through one lock, so the manager can be shared between
concurrent request handlers.
"""

import logging
import re
import threading

from functree.config import NAMESPACE_PREFIX
from functree.models import (
    FunctionInstance,
    ProjectCredentials,
    ProjectNamespace,
    ValidationResult,
    utcnow,
)

logger = logging.getLogger(__name__)

# No underscores: the project segment of a namespaced id must be unambiguous.
PROJECT_REF_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9-]*$")


def _require_project_ref(project_ref: str) -> None:
    if not isinstance(project_ref, str) or not PROJECT_REF_PATTERN.match(project_ref):
        raise ValueError(f"Invalid project reference {project_ref!r}")


class NamespaceManager:
    """Owns every ProjectNamespace plus the flat id -> project lookup table."""

    def __init__(self, namespace_prefix: str = NAMESPACE_PREFIX):
        self.namespace_prefix = namespace_prefix
        self._namespaces: dict[str, ProjectNamespace] = {}
        self._function_to_project: dict[str, str] = {}
        # Re-entrant: register_instance() calls isolate() which may call
        # create_namespace(), all under the same lock.
        self._lock = threading.RLock()

    def namespaced_id(self, function_name: str, project_ref: str) -> str:
        return f"{self.namespace_prefix}_{project_ref}_{function_name}"

    def create_namespace(self, project_ref: str) -> ProjectNamespace:
        """Create the namespace for project_ref, or return the existing one."""
        _require_project_ref(project_ref)
        with self._lock:
            namespace = self._namespaces.get(project_ref)
            if namespace is None:
                namespace = ProjectNamespace(project_ref=project_ref)
                self._namespaces[project_ref] = namespace
                logger.info("Created project namespace: %s", project_ref)
            return namespace

    def isolate(self, function_name: str, project_ref: str) -> str:
        """
        Bind function_name to project_ref and return its namespaced id.

        Creates the namespace if needed. Calling it again with the same
        arguments returns the same id and creates nothing new.
        """
        if not function_name or not isinstance(function_name, str):
            raise ValueError("Function name must be a non-empty string")
        _require_project_ref(project_ref)

        with self._lock:
            self.create_namespace(project_ref)
            namespaced_id = self.namespaced_id(function_name, project_ref)
            self._function_to_project[namespaced_id] = project_ref
            self._function_to_project[f"{project_ref}:{function_name}"] = project_ref

        logger.debug("Isolated function '%s' to namespace '%s' as '%s'", function_name, project_ref, namespaced_id)
        return namespaced_id

    def validate_access(self, function_id: str, project_ref: str) -> bool:
        """
        True if function_id belongs to project_ref.

        Checked in order: the flat lookup table, the project-scoped key
        "project:name", the project's namespace prefix, and finally the
        project's own function map. Anything else is denied.
        """
        if not function_id or not isinstance(function_id, str):
            return False
        if not project_ref or not isinstance(project_ref, str):
            return False

        with self._lock:
            owner = self._function_to_project.get(function_id)
            if owner is not None:
                return owner == project_ref

            scoped_owner = self._function_to_project.get(f"{project_ref}:{function_id}")
            if scoped_owner is not None:
                return scoped_owner == project_ref

            namespace = self._namespaces.get(project_ref)
            if namespace is None:
                return False

            if function_id.startswith(f"{self.namespace_prefix}_{project_ref}_"):
                return True

            return function_id in namespace.functions

    def register_instance(self, instance: FunctionInstance) -> FunctionInstance:
        """
        Store instance in its project's namespace.

        The namespaced id is filled in if missing. The instance is reachable
        by name and by namespaced id; the flat table learns the namespaced
        id, the original id and the project-scoped name.
        """
        with self._lock:
            namespace = self.create_namespace(instance.project_ref)
            if not instance.namespaced_id:
                instance.namespaced_id = self.isolate(instance.name, instance.project_ref)
            instance.updated_at = utcnow()

            namespace.functions[instance.name] = instance
            namespace.functions[instance.namespaced_id] = instance

            project_ref = instance.project_ref
            self._function_to_project[f"{project_ref}:{instance.name}"] = project_ref
            self._function_to_project[instance.namespaced_id] = project_ref
            self._function_to_project[instance.id] = project_ref

        logger.info("Registered function '%s' in project '%s'", instance.name, instance.project_ref)
        return instance

    def update_credentials(self, project_ref: str, credentials: ProjectCredentials) -> None:
        with self._lock:
            namespace = self._namespaces.get(project_ref)
            if namespace is None:
                raise KeyError(f"Project namespace not found: {project_ref}")
            namespace.credentials = credentials.model_copy()
        logger.info("Updated credentials for project: %s", project_ref)

    def set_environment(self, project_ref: str, env_vars: dict[str, str]) -> None:
        """Replace the project's environment variables."""
        with self._lock:
            namespace = self._namespaces.get(project_ref)
            if namespace is None:
                raise KeyError(f"Project namespace not found: {project_ref}")
            namespace.environment_variables = dict(env_vars)
        logger.info("Updated environment variables for project: %s", project_ref)

    def remove_namespace(self, project_ref: str) -> bool:
        """Delete the namespace and every lookup entry pointing at it."""
        with self._lock:
            if project_ref not in self._namespaces:
                return False

            stale = [
                function_id
                for function_id, owner in self._function_to_project.items()
                if owner == project_ref or function_id.startswith(f"{project_ref}:")
            ]
            for function_id in stale:
                del self._function_to_project[function_id]

            del self._namespaces[project_ref]

        logger.info("Removed project namespace: %s (%d lookup entries)", project_ref, len(stale))
        return True

    def get_namespace(self, project_ref: str) -> ProjectNamespace | None:
        with self._lock:
            return self._namespaces.get(project_ref)

    def get_all_namespaces(self) -> dict[str, ProjectNamespace]:
        with self._lock:
            return dict(self._namespaces)

    def get_function_instance(self, function_id: str, project_ref: str) -> FunctionInstance | None:
        with self._lock:
            if not self.validate_access(function_id, project_ref):
                return None
            namespace = self._namespaces.get(project_ref)
            return namespace.functions.get(function_id) if namespace else None

    def list_project_functions(self, project_ref: str) -> list[FunctionInstance]:
        """Unique instances of a project (each is stored under two keys)."""
        with self._lock:
            namespace = self._namespaces.get(project_ref)
            if namespace is None:
                return []
            unique = {instance.id: instance for instance in namespace.functions.values()}
        return list(unique.values())

    def validate(self) -> ValidationResult:
        """Check that namespaces, instances and the lookup table agree."""
        errors = []
        warnings = []
        with self._lock:
            for project_ref, namespace in self._namespaces.items():
                if namespace.project_ref != project_ref:
                    errors.append(
                        f"Namespace project reference mismatch: {project_ref} vs {namespace.project_ref}"
                    )
                for key, instance in namespace.functions.items():
                    if instance.project_ref != project_ref:
                        errors.append(
                            f"Function {key} has incorrect project reference: "
                            f"{instance.project_ref} vs {project_ref}"
                        )
                    tracked = self._function_to_project.get(instance.namespaced_id)
                    if tracked != project_ref:
                        warnings.append(f"Function {key} tracking mismatch: {tracked} vs {project_ref}")
        return ValidationResult.from_messages(errors, warnings)
