from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from functree.main import create_app
from functree.schemas import MASKED_VALUE


@pytest.fixture
def client(function_tree):
    with TestClient(create_app(function_tree)) as client:
        yield client


def test_health(client) -> None:
    assert client.get("/api/health").json() == {"status": "ok"}


def test_list_functions_hides_env_values(client) -> None:
    response = client.get("/api/functions")

    assert response.status_code == 200
    functions = {fn["relative_path"]: fn for fn in response.json()}
    assert sorted(functions) == ["api/auth/login", "hello", "utils/validation/user-validator"]
    login = functions["api/auth/login"]
    assert login["environment_keys"] == ["FUNCTREE_T_REGION", "FUNCTREE_T_SHARED"]
    assert login["dependencies"][0]["target_function"] == "utils/validation/user-validator"
    assert "environment_config" not in login
    assert '"FUNCTREE_T_SHARED":"function"' not in response.text


def test_get_function_by_path_and_legacy_name(client) -> None:
    assert client.get("/api/functions/api/auth/login").json()["relative_path"] == "api/auth/login"
    assert client.get("/api/functions/login").json()["relative_path"] == "api/auth/login"
    assert client.get("/api/functions/ghost").status_code == 404


def test_order_and_validate(client) -> None:
    order = client.get("/api/functions/order").json()
    assert order["ok"]
    assert order["functions"].index("utils/validation/user-validator") < order["functions"].index("api/auth/login")

    validation = client.get("/api/functions/validate").json()
    assert validation["is_valid"]


def test_rescan_picks_up_new_function(client, function_tree) -> None:
    (function_tree / "reports").mkdir()
    (function_tree / "reports" / "index.py").write_text("def handler(request): return {}\n")

    response = client.post("/api/functions/rescan")

    assert response.json() == {"functions": 4}
    assert client.get("/api/functions/reports").status_code == 200


def test_project_lifecycle(client) -> None:
    created = client.post("/api/projects/proj1", json={
        "credentials": {"service_role_key": "srk", "anon_key": "anon", "base_url": "https://proj1.example.com"},
        "environment": {"API_URL": "https://proj1.example.com"},
    })

    assert created.status_code == 200
    body = created.json()
    assert body["functions"] == [
        "ef_proj1_api/auth/login",
        "ef_proj1_hello",
        "ef_proj1_utils/validation/user-validator",
    ]
    assert body["environment_keys"] == ["API_URL"]
    assert body["has_credentials"]
    assert "srk" not in created.text

    updated = client.put("/api/projects/proj1/env", json={"variables": {"MODE": "prod"}})
    assert updated.json()["environment_keys"] == ["MODE"]

    assert client.delete("/api/projects/proj1").status_code == 200
    assert client.get("/api/projects/proj1").status_code == 404
    assert client.delete("/api/projects/proj1").status_code == 404


def test_bind_without_body(client) -> None:
    response = client.post("/api/projects/proj1")

    assert response.status_code == 200
    assert not response.json()["has_credentials"]


def test_invalid_project_ref_is_400(client) -> None:
    assert client.post("/api/projects/bad_ref").status_code == 400


def test_unknown_project_endpoints_are_404(client) -> None:
    assert client.get("/api/projects/ghost").status_code == 404
    assert client.put("/api/projects/ghost/env", json={"variables": {}}).status_code == 404
    assert client.get("/api/projects/ghost/plan").status_code == 404


def test_plan_masks_environment_values(client) -> None:
    client.post("/api/projects/proj1", json={
        "credentials": {"service_role_key": "srk", "base_url": "https://proj1.example.com"},
        "environment": {"SECRET": "hunter2"},
    })

    plan = client.get("/api/projects/proj1/plan").json()

    assert plan["ok"]
    assert len(plan["entries"]) == 3
    assert all(value == MASKED_VALUE for entry in plan["entries"] for value in entry["environment"].values())
    assert "hunter2" not in str(plan)


def test_gateway_invokes_bound_function(client) -> None:
    client.post("/api/projects/proj1")

    response = client.post(
        "/api/gateway/proj1/hello",
        json={"name": "Islam"},
        headers={"x-request-id": "req-42"},
    )

    assert response.status_code == 200
    assert response.json() == {
        "message": "Hello, Islam!",
        "project": "proj1",
        "region": "eu",
        "request_id": "req-42",
    }


def test_gateway_denies_unbound_project(client) -> None:
    response = client.post("/api/gateway/proj2/hello", json={})

    assert response.status_code == 403
    assert response.json()["target"] == "hello"


def test_gateway_reports_function_failures(client) -> None:
    client.post("/api/projects/proj1")

    missing = client.post("/api/gateway/proj1/ghost", json={})
    not_python = client.post("/api/gateway/proj1/api/auth/login", json={})

    assert missing.status_code == 404
    assert not_python.status_code == 501
    assert not_python.json()["error"] == "Function invocation failed"


def test_gateway_rejects_invalid_json(client) -> None:
    client.post("/api/projects/proj1")

    response = client.post(
        "/api/gateway/proj1/hello",
        content=b"{not json",
        headers={"content-type": "application/json"},
    )

    assert response.status_code == 400


def test_startup_fails_for_missing_tree(tmp_path) -> None:
    from functree.services.function_scanner import ScanError

    with pytest.raises(ScanError):
        with TestClient(create_app(tmp_path / "missing")):
            pass


def test_plan_without_credentials_lists_target_errors(client) -> None:
    client.post("/api/projects/proj1")

    plan = client.get("/api/projects/proj1/plan").json()

    assert not plan["ok"]
    assert plan["entries"] == []
    assert "Missing service role key for project proj1" in plan["errors"]
