"""
Environment loader -- builds the env vars a function runs with.

Two .env files feed every function:
1. Project level: <functions root>/.env, shared by every function
2. Function level: <function dir>/.env, overrides the project level

After both files are merged, the process environment may override values
for keys the files already define (never adds new keys). This lets an
operator patch a secret at deploy time without editing files.

Parsing is delegated to python-dotenv; this module only decides which
files to read and in which order to layer them.
"""

import logging
import os
from pathlib import Path

from dotenv import dotenv_values

from functree.config import ENV_SYSTEM_OVERRIDE
from functree.models import EnvironmentConfig, ValidationResult

logger = logging.getLogger(__name__)

ENV_FILE_NAME = ".env"

# Files that mark the root of a function tree when the loader has to find
# it on its own.
ROOT_MARKERS = ("deno.json", "pyproject.toml", "functree.toml")


class EnvironmentLoader:
    """
    Loads layered environment configuration for function directories.

    If root_path is given, the project-level .env is read from there.
    Otherwise the loader walks up from each function directory looking
    for a ROOT_MARKERS file.
    """

    def __init__(self, root_path: str | Path | None = None, system_override: bool = ENV_SYSTEM_OVERRIDE):
        self.root_path = Path(root_path).resolve() if root_path else None
        self.system_override = system_override

    def load(self, function_path: str | Path) -> EnvironmentConfig:
        function_dir = Path(function_path).resolve()
        config = EnvironmentConfig()

        project_env = self._find_project_env_file(function_dir)
        if project_env is not None:
            config.project_level = self._read_env_file(project_env)
            config.merged.update(config.project_level)
            config.precedence_order.append("project")

        function_env = function_dir / ENV_FILE_NAME
        if function_env.is_file() and function_env != project_env:
            config.function_level = self._read_env_file(function_env)
            config.merged.update(config.function_level)
            config.precedence_order.append("function")

        if self.system_override and self._apply_system_overrides(config.merged):
            config.precedence_order.append("system")

        return config

    def _find_project_env_file(self, function_dir: Path) -> Path | None:
        if self.root_path is not None:
            candidate = self.root_path / ENV_FILE_NAME
            return candidate if candidate.is_file() else None

        for parent in function_dir.parents:
            if any((parent / marker).is_file() for marker in ROOT_MARKERS):
                candidate = parent / ENV_FILE_NAME
                return candidate if candidate.is_file() else None
        return None

    def _read_env_file(self, env_path: Path) -> dict[str, str]:
        """Parse one .env file. Unreadable files contribute nothing."""
        try:
            values = dotenv_values(env_path)
        except (OSError, UnicodeDecodeError) as exc:
            logger.error("Could not read env file %s: %s", env_path, exc)
            return {}
        # Bare keys ("FOO" without "=") come back as None
        return {key: value if value is not None else "" for key, value in values.items()}

    def _apply_system_overrides(self, merged: dict[str, str]) -> bool:
        overridden = False
        for key in merged:
            value = os.environ.get(key)
            if value is not None:
                merged[key] = value
                overridden = True
        return overridden

    @staticmethod
    def validate(config: EnvironmentConfig) -> ValidationResult:
        """Flag empty values and function-level overrides of project values."""
        warnings = []
        for key, value in config.merged.items():
            if not value.strip():
                warnings.append(f"Environment variable '{key}' is empty")

        for key, project_value in config.project_level.items():
            function_value = config.function_level.get(key)
            if function_value is not None and function_value != project_value:
                warnings.append(
                    f"Environment variable '{key}' overridden: "
                    f"project='{project_value}' -> function='{function_value}'"
                )

        return ValidationResult.from_messages([], warnings)
