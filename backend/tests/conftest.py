from __future__ import annotations

from collections.abc import Callable
from pathlib import Path

import pytest

from functree.models import FunctionDependency, FunctionMetadata, function_id_for

HELLO_HANDLER = '''\
import json


def handler(request, context):
    body = json.loads(request.content or b"{}")
    return {
        "message": f"Hello, {body.get('name', 'World')}!",
        "project": context.project_ref,
        "region": context.environment.get("FUNCTREE_T_REGION"),
        "request_id": request.headers.get("x-request-id"),
    }
'''

STANDARD_TREE = {
    ".env": "FUNCTREE_T_REGION=eu\nFUNCTREE_T_SHARED=project\n",
    "hello/index.py": HELLO_HANDLER,
    "api/auth/login/index.ts": (
        "import { validateUser } from '../../utils/validation/user-validator'\n"
        "export default async (req: Request) => new Response('ok')\n"
    ),
    "api/auth/login/.env": "FUNCTREE_T_SHARED=function\n",
    "utils/validation/user-validator/index.ts": "export const validateUser = () => true\n",
    "docs/README.md": "# not a function\n",
    "node_modules/left-pad/index.js": "module.exports = () => ''\n",
}


def write_tree(root: Path, files: dict[str, str]) -> Path:
    root.mkdir(parents=True, exist_ok=True)
    for relative_path, content in files.items():
        path = root / relative_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)
    return root


@pytest.fixture
def make_tree(tmp_path: Path) -> Callable[[dict[str, str]], Path]:
    def _make(files: dict[str, str]) -> Path:
        return write_tree(tmp_path / "functions", files)

    return _make


@pytest.fixture
def function_tree(make_tree) -> Path:
    return make_tree(STANDARD_TREE)


def make_function(relative_path: str, *targets: str, root: str = "/srv/functions") -> FunctionMetadata:
    """Metadata without touching the filesystem, for graph-level tests."""
    return FunctionMetadata(
        id=function_id_for(relative_path),
        name=relative_path,
        path=f"{root}/{relative_path}",
        relative_path=relative_path,
        entry_module="index.py",
        dependencies=[
            FunctionDependency(target_function=target, target_path=f"{root}/{target}")
            for target in targets
        ],
    )
