"""
Execution context resolver.

Shared logic for building the per-invocation context a function runs
with: the project it runs for, a request id, the caller's headers and the
resolved environment. Used by both the cross-function proxy and the
gateway router to avoid duplicating this logic.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field

from functree.models import FunctionMetadata, ProjectNamespace, generate_id


@dataclass
class ExecutionContext:
    """Everything needed to run a function besides the code itself."""
    project_ref: str
    request_id: str = field(default_factory=generate_id)
    headers: dict[str, str] = field(default_factory=dict)
    environment: dict[str, str] = field(default_factory=dict)


def resolve_environment(
    metadata: FunctionMetadata | None,
    namespace: ProjectNamespace | None,
) -> dict[str, str]:
    """
    Layer the environment for one function in one project.

    Project namespace variables come first, the function's own merged
    .env configuration overrides them.
    """
    environment: dict[str, str] = {}
    if namespace is not None:
        environment.update(namespace.environment_variables)
    if metadata is not None:
        environment.update(metadata.environment_config.merged)
    return environment


def resolve_context(
    project_ref: str,
    metadata: FunctionMetadata | None = None,
    namespace: ProjectNamespace | None = None,
    headers: Mapping[str, str] | None = None,
    request_id: str | None = None,
) -> ExecutionContext:
    """Build a fresh ExecutionContext. Contexts are never cached or reused."""
    return ExecutionContext(
        project_ref=project_ref,
        request_id=request_id or generate_id(),
        headers=dict(headers or {}),
        environment=resolve_environment(metadata, namespace),
    )
