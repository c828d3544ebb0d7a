"""
Pydantic schemas for request/response validation.

The core models in models.py describe what the scanner and namespace
layer work with. These schemas describe what the HTTP API sends and
receives. They differ on purpose: env var VALUES and credentials never
leave the server, only their keys do.
"""

from datetime import datetime

from pydantic import BaseModel, Field

from functree.models import (
    CircularDependency,
    FunctionDependency,
    FunctionMetadata,
    ProjectCredentials,
    ProjectNamespace,
)

MASKED_VALUE = "********"


# --- Function schemas ---


class FunctionResponse(BaseModel):
    """A scanned function. Environment values are reduced to their keys."""

    id: str
    name: str
    relative_path: str
    entry_module: str
    is_legacy: bool
    dependencies: list[FunctionDependency]
    environment_keys: list[str]
    created_at: datetime

    @classmethod
    def from_metadata(cls, fn: FunctionMetadata) -> "FunctionResponse":
        return cls(
            id=fn.id,
            name=fn.name,
            relative_path=fn.relative_path,
            entry_module=fn.entry_module,
            is_legacy=fn.is_legacy,
            dependencies=fn.dependencies,
            environment_keys=sorted(fn.environment_config.merged),
            created_at=fn.created_at,
        )


class DeploymentOrderResponse(BaseModel):
    ok: bool
    functions: list[str]
    batches: list[list[str]]
    cycles: list[CircularDependency]


class ValidationResponse(BaseModel):
    is_valid: bool
    errors: list[str]
    warnings: list[str]


# --- Project schemas ---


class ProjectBind(BaseModel):
    """
    Schema for binding a project to the function tree
    (POST /api/projects/:project_ref).

    Both fields are optional; they can also be set later.
    """

    credentials: ProjectCredentials | None = None
    environment: dict[str, str] | None = None


class EnvVarsSet(BaseModel):
    """Replaces the project's environment variables wholesale."""

    variables: dict[str, str] = Field(default_factory=dict)


class NamespaceResponse(BaseModel):
    project_ref: str
    functions: list[str]
    environment_keys: list[str]
    has_credentials: bool

    @classmethod
    def from_namespace(cls, namespace: ProjectNamespace) -> "NamespaceResponse":
        namespaced_ids = {instance.namespaced_id for instance in namespace.functions.values()}
        return cls(
            project_ref=namespace.project_ref,
            functions=sorted(namespaced_ids),
            environment_keys=sorted(namespace.environment_variables),
            has_credentials=bool(namespace.credentials.service_role_key),
        )


class PlanEntryResponse(BaseModel):
    position: int
    relative_path: str
    namespaced_id: str
    environment: dict[str, str]


class DeploymentPlanResponse(BaseModel):
    project_ref: str
    ok: bool
    entries: list[PlanEntryResponse]
    batches: list[list[str]]
    cycles: list[CircularDependency]
    errors: list[str]
