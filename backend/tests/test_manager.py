from __future__ import annotations

import pytest
import pytest_asyncio

from functree.models import DeploymentPlanEntry, DeploymentResult, ProjectCredentials
from functree.services.environment_loader import EnvironmentLoader
from functree.services.function_scanner import FunctionScanner, ScanError
from functree.services.manager import FunctionsManager


class RecordingDeploymentService:
    """Fake deployment API: records entries, fails the paths it is told to."""

    def __init__(self, failing: set[str] = frozenset(), raising: set[str] = frozenset()):
        self.failing = set(failing)
        self.raising = set(raising)
        self.deployed: list[DeploymentPlanEntry] = []

    async def deploy(self, entry: DeploymentPlanEntry) -> DeploymentResult:
        self.deployed.append(entry)
        if entry.relative_path in self.raising:
            raise ConnectionError("deployment API unreachable")
        success = entry.relative_path not in self.failing
        return DeploymentResult(
            success=success,
            relative_path=entry.relative_path,
            project_ref=entry.project_ref,
            deployment_id=f"dep-{entry.position}" if success else None,
            error=None if success else "rejected",
        )


class DenyingSecurityManager:
    def __init__(self):
        self.initialized: list[str] = []
        self.checked: list[tuple[str, str]] = []

    def initialize_project_permissions(self, project_ref: str) -> None:
        self.initialized.append(project_ref)

    async def validate_project_access(self, function_id: str, project_ref: str) -> bool:
        self.checked.append((function_id, project_ref))
        return False


CREDENTIALS = ProjectCredentials(
    service_role_key="srk",
    anon_key="anon",
    base_url="https://proj1.example.com",
)


def _manager(root, **kwargs) -> FunctionsManager:
    scanner = FunctionScanner(env_loader=EnvironmentLoader(root, system_override=False))
    return FunctionsManager(root, namespace_prefix="ef", scanner=scanner, **kwargs)


@pytest_asyncio.fixture
async def manager(function_tree) -> FunctionsManager:
    manager = _manager(function_tree)
    await manager.initialize()
    return manager


# --- scanning and ordering ---


@pytest.mark.asyncio
async def test_initialize_builds_registry_and_order(manager) -> None:
    assert sorted(manager.registry) == ["api/auth/login", "hello", "utils/validation/user-validator"]
    assert manager.get_function("login").relative_path == "api/auth/login"

    order = manager.deployment_order()
    assert order.ok
    assert order.functions.index("utils/validation/user-validator") < order.functions.index("api/auth/login")


@pytest.mark.asyncio
async def test_initialize_missing_root_raises(tmp_path) -> None:
    manager = _manager(tmp_path / "missing")

    with pytest.raises(ScanError):
        await manager.initialize()


@pytest.mark.asyncio
async def test_rescan_swaps_registry(manager, function_tree) -> None:
    before = manager.registry
    (function_tree / "reports").mkdir()
    (function_tree / "reports" / "index.py").write_text("def handler(request): return {}\n")

    after = await manager.rescan()

    assert after is manager.registry
    assert after is not before
    assert "reports" not in before
    assert "reports" in after


@pytest.mark.asyncio
async def test_validate_collects_every_problem(make_tree) -> None:
    root = make_tree({
        "a/index.ts": "import b from './b'\n",
        "b/index.ts": "import a from './a'\n",
        "c/index.ts": "import ghost from './ghost'\n",
        "c/.env": "EMPTY=\n",
    })
    manager = _manager(root)
    await manager.initialize()

    result = manager.validate()

    assert not result.is_valid
    assert "Circular dependency: a -> b -> a" in result.errors
    assert "Function 'c' depends on 'ghost' which is not found" in result.warnings
    assert "c: Environment variable 'EMPTY' is empty" in result.warnings


# --- invocation gate ---


@pytest.mark.asyncio
async def test_unbound_project_is_denied(manager) -> None:
    response = await manager.invoke("proj1", "hello", {"name": "Islam"})

    assert response.status_code == 403
    assert response.json()["error"] == "Function invocation failed"


@pytest.mark.asyncio
async def test_bound_project_runs_function_with_its_environment(manager) -> None:
    manager.bind_project("proj1", env_vars={"FUNCTREE_T_REGION": "overridden-by-function-env"})

    response = await manager.invoke("proj1", "hello", {"name": "Islam"}, headers={"x-request-id": "req-9"})

    assert response.status_code == 200
    assert response.json() == {
        "message": "Hello, Islam!",
        "project": "proj1",
        "region": "eu",
        "request_id": "req-9",
    }


@pytest.mark.asyncio
async def test_project_environment_reaches_handler(manager, function_tree) -> None:
    (function_tree / ".env").write_text("")
    await manager.rescan()
    manager.bind_project("proj1", env_vars={"FUNCTREE_T_REGION": "us"})

    response = await manager.invoke("proj1", "hello", {})

    assert response.json()["region"] == "us"


@pytest.mark.asyncio
async def test_sandbox_violation_is_400(manager) -> None:
    manager.bind_project("proj1")

    response = await manager.invoke("proj1", "../../../etc/passwd", {})

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_unknown_function_is_404(manager) -> None:
    manager.bind_project("proj1")

    response = await manager.invoke("proj1", "ghost", {})

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_caller_relative_invocation(manager) -> None:
    manager.bind_project("proj1")
    manager.handler_loader.register("utils/validation/user-validator", lambda request: {"valid": True})

    response = await manager.invoke(
        "proj1", "../../utils/validation/user-validator", {}, caller="api/auth/login"
    )

    assert response.status_code == 200
    assert response.json() == {"valid": True}


@pytest.mark.asyncio
async def test_legacy_caller_name_anchors_relative_references(make_tree) -> None:
    root = make_tree({
        "billing/index.py": "",
        "api/auth/billing/index.py": "",
        "api/auth/login/index.py": "",
    })
    manager = _manager(root)
    await manager.initialize()
    manager.bind_project("proj1")
    manager.handler_loader.register("billing", lambda request: {"who": "billing"})
    manager.handler_loader.register("api/auth/billing", lambda request: {"who": "api/auth/billing"})

    by_path = await manager.invoke("proj1", "./billing", {}, caller="api/auth/login")
    by_alias = await manager.invoke("proj1", "./billing", {}, caller="login")

    assert by_path.json() == by_alias.json() == {"who": "api/auth/billing"}


@pytest.mark.asyncio
async def test_unknown_caller_is_404(manager) -> None:
    manager.bind_project("proj1")

    response = await manager.invoke("proj1", "hello", {}, caller="ghost")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_call_closing_a_cycle_is_403(manager) -> None:
    manager.bind_project("proj1")

    response = await manager.invoke(
        "proj1", "/api/auth/login", {}, caller="utils/validation/user-validator"
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_security_manager_has_final_say(function_tree) -> None:
    security = DenyingSecurityManager()
    manager = _manager(function_tree, security_manager=security)
    await manager.initialize()
    manager.bind_project("proj1")

    first = await manager.invoke("proj1", "hello", {})
    second = await manager.invoke("proj1", "hello", {})

    assert first.status_code == second.status_code == 403
    assert security.initialized == ["proj1"]
    assert security.checked == [("ef_proj1_hello", "proj1")] * 2


@pytest.mark.asyncio
async def test_removed_project_loses_access(manager) -> None:
    manager.bind_project("proj1")
    assert (await manager.invoke("proj1", "hello", {})).status_code == 200

    assert manager.remove_project("proj1")

    assert (await manager.invoke("proj1", "hello", {})).status_code == 403
    assert await manager.authorize("hello", "proj1") is None


@pytest.mark.asyncio
async def test_projects_are_isolated(manager) -> None:
    manager.bind_project("proj1")

    assert await manager.authorize("hello", "proj1") == "ef_proj1_hello"
    assert await manager.authorize("hello", "proj2") is None


# --- deployment ---


@pytest.mark.asyncio
async def test_plan_carries_namespaced_ids_and_environment(manager) -> None:
    manager.bind_project(
        "proj1",
        credentials=CREDENTIALS,
        env_vars={"API_URL": "https://proj1.example.com"},
    )

    plan = manager.plan_deployment("proj1")

    assert plan.ok
    by_path = {entry.relative_path: entry for entry in plan.entries}
    login = by_path["api/auth/login"]
    assert login.namespaced_id == "ef_proj1_api/auth/login"
    assert login.base_url == "https://proj1.example.com"
    assert login.environment == {
        "API_URL": "https://proj1.example.com",
        "FUNCTREE_T_REGION": "eu",
        "FUNCTREE_T_SHARED": "function",
    }
    assert by_path["utils/validation/user-validator"].position < login.position


@pytest.mark.asyncio
async def test_deploy_in_order(manager) -> None:
    manager.bind_project("proj1", credentials=CREDENTIALS)
    service = RecordingDeploymentService()

    results = await manager.deploy("proj1", service)

    assert all(result.success for result in results)
    deployed = [entry.relative_path for entry in service.deployed]
    assert deployed.index("utils/validation/user-validator") < deployed.index("api/auth/login")


@pytest.mark.asyncio
async def test_deploy_skips_dependents_of_failures(manager) -> None:
    manager.bind_project("proj1", credentials=CREDENTIALS)
    service = RecordingDeploymentService(failing={"utils/validation/user-validator"})

    results = {result.relative_path: result for result in await manager.deploy("proj1", service)}

    assert not results["utils/validation/user-validator"].success
    assert results["api/auth/login"].error == (
        "Skipped: dependency utils/validation/user-validator failed to deploy"
    )
    assert results["hello"].success
    assert "api/auth/login" not in [entry.relative_path for entry in service.deployed]


@pytest.mark.asyncio
async def test_deploy_exception_becomes_failed_result(manager) -> None:
    manager.bind_project("proj1", credentials=CREDENTIALS)
    service = RecordingDeploymentService(raising={"hello"})

    results = {result.relative_path: result for result in await manager.deploy("proj1", service)}

    assert not results["hello"].success
    assert results["hello"].error == "Deployment error: deployment API unreachable"
    assert results["api/auth/login"].success


@pytest.mark.asyncio
async def test_deploy_refuses_cyclic_tree(make_tree) -> None:
    root = make_tree({
        "a/index.ts": "import b from './b'\n",
        "b/index.ts": "import a from './a'\n",
    })
    manager = _manager(root)
    await manager.initialize()
    service = RecordingDeploymentService()

    plan = manager.plan_deployment("proj1")
    results = await manager.deploy("proj1", service)

    assert not plan.ok
    assert plan.entries == []
    assert results == []
    assert service.deployed == []


@pytest.mark.asyncio
async def test_unbound_project_is_not_a_deployment_target(manager) -> None:
    service = RecordingDeploymentService()

    plan = manager.plan_deployment("proj1")
    results = await manager.deploy("proj1", service)

    assert not plan.ok
    assert plan.entries == []
    assert plan.errors == ["Project namespace not found: proj1"]
    assert results == []
    assert service.deployed == []


@pytest.mark.asyncio
async def test_deployment_target_needs_service_key_and_base_url(manager) -> None:
    manager.bind_project("proj1", credentials=ProjectCredentials(anon_key="anon"))
    service = RecordingDeploymentService()

    plan = manager.plan_deployment("proj1")
    results = await manager.deploy("proj1", service)

    assert not plan.ok
    assert plan.entries == []
    assert plan.errors == [
        "Missing service role key for project proj1",
        "Missing base URL for project proj1",
    ]
    assert results == []
    assert service.deployed == []

    manager.namespaces.update_credentials("proj1", CREDENTIALS)

    assert manager.validate_deployment_target("proj1").is_valid
    assert manager.plan_deployment("proj1").ok
