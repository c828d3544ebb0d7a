"""
Core data models.

These pydantic models describe everything the scanner discovers and
everything the namespace layer tracks. They are plain in-memory records:
nothing here is persisted, a scan simply builds a fresh set of them.

For example, a tree like:
    functions/
        hello/index.py
        api/auth/login/index.ts
produces two FunctionMetadata records keyed by relative path:
    "hello"            (legacy, flat layout)
    "api/auth/login"   (nested layout)
"""

import re
import uuid
from collections.abc import Iterator, Mapping
from datetime import datetime, timezone
from typing import Literal

from pydantic import BaseModel, Field, computed_field


def generate_id() -> str:
    """Generate a short random ID (12 hex characters)."""
    return uuid.uuid4().hex[:12]


def utcnow() -> datetime:
    """Return the current UTC time. Used as default value for timestamps."""
    return datetime.now(timezone.utc)


def function_id_for(name: str) -> str:
    """Build a function id like "func_api_auth_login_1a2b3c4d5e6f"."""
    return f"func_{re.sub(r'[^a-zA-Z0-9]', '_', name)}_{generate_id()}"


# --- Scanner output ---


DependencyType = Literal["import", "call", "shared"]


class FunctionDependency(BaseModel):
    """
    One edge from a function to another function in the tree.

    "import" edges come from the entry-module heuristic, "shared" edges from
    explicit declarations and "call" edges are reserved for calls detected
    at resolve time.
    """

    target_function: str
    target_path: str
    dependency_type: DependencyType = "import"


class EnvironmentConfig(BaseModel):
    """Environment layers for one function. merged is what the function sees."""

    project_level: dict[str, str] = Field(default_factory=dict)
    function_level: dict[str, str] = Field(default_factory=dict)
    merged: dict[str, str] = Field(default_factory=dict)
    precedence_order: list[str] = Field(default_factory=list)


class FunctionMetadata(BaseModel):
    """A function discovered in the tree. relative_path is the primary key."""

    id: str
    name: str
    path: str
    relative_path: str
    entry_module: str
    environment_config: EnvironmentConfig = Field(default_factory=EnvironmentConfig)
    dependencies: list[FunctionDependency] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @computed_field
    @property
    def is_legacy(self) -> bool:
        """Legacy functions live directly under the root (single path segment)."""
        return "/" not in self.relative_path


class FunctionRegistry(Mapping):
    """
    Read-only mapping of relative path -> FunctionMetadata.

    A registry is built once per scan and never mutated afterwards. A rescan
    builds a new registry and the owner swaps the reference, so readers never
    observe a half-built registry.

    Besides exact relative paths, lookups accept legacy-style short names:
    a leaf name like "login" resolves to "api/auth/login" as long as it is
    unambiguous and doesn't shadow a real flat function called "login".
    """

    def __init__(self, functions: list[FunctionMetadata] | None = None):
        self._functions: dict[str, FunctionMetadata] = {}
        for fn in functions or []:
            self._functions[fn.relative_path] = fn
        self._aliases = self._build_aliases()

    def _build_aliases(self) -> dict[str, str]:
        leaf_owners: dict[str, list[str]] = {}
        for relative_path in self._functions:
            leaf = relative_path.rsplit("/", 1)[-1]
            leaf_owners.setdefault(leaf, []).append(relative_path)

        aliases = {}
        for leaf, owners in leaf_owners.items():
            if leaf in self._functions:
                # A flat function owns its own name
                aliases[leaf] = leaf
            elif len(owners) == 1:
                aliases[leaf] = owners[0]
        return aliases

    def __getitem__(self, relative_path: str) -> FunctionMetadata:
        return self._functions[relative_path]

    def __iter__(self) -> Iterator[str]:
        return iter(self._functions)

    def __len__(self) -> int:
        return len(self._functions)

    def resolve_alias(self, ref: str) -> str | None:
        """Map a relative path or legacy short name to a relative path."""
        ref = ref.strip("/")
        if ref in self._functions:
            return ref
        return self._aliases.get(ref)

    def lookup(self, ref: str) -> FunctionMetadata | None:
        relative_path = self.resolve_alias(ref)
        return self._functions.get(relative_path) if relative_path else None

    def functions(self) -> list[FunctionMetadata]:
        return list(self._functions.values())


# --- Dependency graph results ---


class CircularDependency(BaseModel):
    """
    A cycle in the dependency graph.

    cycle is the path through the graph closed by repeating its first
    member, e.g. ["a", "b", "a"].
    """

    cycle: list[str]
    type: Literal["direct", "indirect"]

    @property
    def members(self) -> set[str]:
        return set(self.cycle)


class DeploymentOrder(BaseModel):
    """
    Result of ordering the graph.

    When cycles is non-empty there is no usable order: functions and
    batches are left empty and ok is False.
    """

    functions: list[str] = Field(default_factory=list)
    batches: list[list[str]] = Field(default_factory=list)
    cycles: list[CircularDependency] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.cycles


class ValidationResult(BaseModel):
    """Errors make a result invalid, warnings are informational."""

    is_valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)

    @classmethod
    def from_messages(cls, errors: list[str], warnings: list[str]) -> "ValidationResult":
        return cls(is_valid=not errors, errors=errors, warnings=warnings)

    def merge(self, other: "ValidationResult") -> "ValidationResult":
        return ValidationResult.from_messages(
            self.errors + other.errors, self.warnings + other.warnings
        )


# --- Project namespaces ---


class ProjectCredentials(BaseModel):
    """Credentials injected for one project. Stored as given, never generated."""

    service_role_key: str = ""
    anon_key: str = ""
    base_url: str = ""


class FunctionInstance(BaseModel):
    """A function bound to one project."""

    id: str
    name: str
    path: str = ""
    relative_path: str = ""
    project_ref: str
    namespaced_id: str = ""
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ProjectNamespace(BaseModel):
    """
    Isolated container for one project.

    functions is keyed by both the plain function name and the namespaced
    id; both keys point at the same FunctionInstance.
    """

    project_ref: str
    functions: dict[str, FunctionInstance] = Field(default_factory=dict)
    environment_variables: dict[str, str] = Field(default_factory=dict)
    credentials: ProjectCredentials = Field(default_factory=ProjectCredentials)


# --- Deployment ---


class DeploymentPlanEntry(BaseModel):
    """The facts the deployment service needs for one function."""

    position: int
    relative_path: str
    namespaced_id: str
    project_ref: str
    # Where the function goes; credentials themselves stay in the namespace
    base_url: str = ""
    environment: dict[str, str] = Field(default_factory=dict)


class DeploymentPlan(BaseModel):
    """
    Entries in deployment order, or what prevents one: dependency cycles
    and deployment-target errors (unbound project, missing credentials).
    """

    project_ref: str
    entries: list[DeploymentPlanEntry] = Field(default_factory=list)
    batches: list[list[str]] = Field(default_factory=list)
    cycles: list[CircularDependency] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.cycles and not self.errors


class DeploymentResult(BaseModel):
    success: bool
    relative_path: str
    project_ref: str
    deployment_id: str | None = None
    url: str | None = None
    error: str | None = None
