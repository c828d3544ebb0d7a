"""
Projects router.

Binds projects (tenants) to the function tree and manages their
namespace: environment variables, credentials and deployment plan.
Secret values are masked in every response.
"""

from fastapi import APIRouter, Depends, HTTPException

from functree.dependencies import get_manager
from functree.models import ProjectCredentials
from functree.schemas import (
    MASKED_VALUE,
    DeploymentPlanResponse,
    EnvVarsSet,
    NamespaceResponse,
    PlanEntryResponse,
    ProjectBind,
)
from functree.services.manager import FunctionsManager

router = APIRouter(prefix="/api/projects", tags=["projects"])


def _get_namespace(manager: FunctionsManager, project_ref: str):
    """Fetch a project's namespace, raising 404 if it was never bound."""
    namespace = manager.namespaces.get_namespace(project_ref)
    if namespace is None:
        raise HTTPException(status_code=404, detail="Project not found")
    return namespace


@router.post("/{project_ref}", response_model=NamespaceResponse)
async def bind_project(
    project_ref: str,
    data: ProjectBind | None = None,
    manager: FunctionsManager = Depends(get_manager),
):
    """
    Create (or refresh) the project's namespace.

    Every scanned function gets a namespaced id in this project. Calling
    it again is safe and picks up functions added by a rescan.
    """
    data = data or ProjectBind()
    try:
        namespace = manager.bind_project(
            project_ref, credentials=data.credentials, env_vars=data.environment
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return NamespaceResponse.from_namespace(namespace)


@router.get("/{project_ref}", response_model=NamespaceResponse)
async def get_project(project_ref: str, manager: FunctionsManager = Depends(get_manager)):
    return NamespaceResponse.from_namespace(_get_namespace(manager, project_ref))


@router.put("/{project_ref}/env", response_model=NamespaceResponse)
async def set_env_vars(
    project_ref: str,
    data: EnvVarsSet,
    manager: FunctionsManager = Depends(get_manager),
):
    _get_namespace(manager, project_ref)
    manager.namespaces.set_environment(project_ref, data.variables)
    return NamespaceResponse.from_namespace(_get_namespace(manager, project_ref))


@router.put("/{project_ref}/credentials", response_model=NamespaceResponse)
async def set_credentials(
    project_ref: str,
    data: ProjectCredentials,
    manager: FunctionsManager = Depends(get_manager),
):
    _get_namespace(manager, project_ref)
    manager.namespaces.update_credentials(project_ref, data)
    return NamespaceResponse.from_namespace(_get_namespace(manager, project_ref))


@router.get("/{project_ref}/plan", response_model=DeploymentPlanResponse)
async def deployment_plan(project_ref: str, manager: FunctionsManager = Depends(get_manager)):
    """What would be deployed for this project, in order. Values are masked."""
    _get_namespace(manager, project_ref)
    plan = manager.plan_deployment(project_ref)
    return DeploymentPlanResponse(
        project_ref=project_ref,
        ok=plan.ok,
        entries=[
            PlanEntryResponse(
                position=entry.position,
                relative_path=entry.relative_path,
                namespaced_id=entry.namespaced_id,
                environment={key: MASKED_VALUE for key in entry.environment},
            )
            for entry in plan.entries
        ],
        batches=plan.batches,
        cycles=plan.cycles,
        errors=plan.errors,
    )


@router.delete("/{project_ref}")
async def remove_project(project_ref: str, manager: FunctionsManager = Depends(get_manager)):
    if not manager.remove_project(project_ref):
        raise HTTPException(status_code=404, detail="Project not found")
    return {"detail": f"Project '{project_ref}' removed"}
