"""
Security manager -- the last gate before a function runs for a project.

The core only relies on two calls:

    initialize_project_permissions(project_ref)    # once per project
    await validate_project_access(namespaced_id, project_ref) -> bool

Anything with those two methods can be plugged in (see SecurityManager).
ProjectSecurityManager is the bundled implementation: strict isolation,
no cross-project calls, and a record of every violation for auditing.
"""

import logging
import re
import threading
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Protocol, runtime_checkable

from functree.config import MAX_SECURITY_VIOLATIONS, NAMESPACE_PREFIX
from functree.models import generate_id, utcnow

logger = logging.getLogger(__name__)

DEFAULT_PERMISSIONS = frozenset({
    "function_access",
    "database_read",
    "database_write",
    "storage_read",
    "storage_write",
    "auth_read",
    "api_read",
    "api_write",
})


@runtime_checkable
class SecurityManager(Protocol):
    """The contract the core depends on."""

    def initialize_project_permissions(self, project_ref: str) -> None: ...

    async def validate_project_access(self, function_id: str, project_ref: str) -> bool: ...


class SecurityViolationType(str, Enum):
    CROSS_PROJECT_ACCESS = "cross_project_access"
    INVALID_RESOURCE_ACCESS = "invalid_resource_access"
    UNAUTHORIZED_FUNCTION_CALL = "unauthorized_function_call"
    NAMESPACE_BOUNDARY_VIOLATION = "namespace_boundary_violation"


@dataclass
class SecurityViolation:
    """One denied access, kept for the audit trail."""
    type: SecurityViolationType
    source_project_ref: str
    severity: str
    target_project_ref: str | None = None
    function_id: str | None = None
    details: dict = field(default_factory=dict)
    id: str = field(default_factory=lambda: f"violation_{generate_id()}")
    timestamp: datetime = field(default_factory=utcnow)


# Severity -> logging level
_SEVERITY_LEVELS = {
    "critical": logging.ERROR,
    "high": logging.ERROR,
    "medium": logging.WARNING,
    "low": logging.INFO,
}


class ProjectSecurityManager:
    """
    Strict-isolation security manager.

    A namespaced id "<prefix>_<project>_<name>" may only run for <project>,
    and only once that project's permissions were initialized.
    """

    def __init__(self, namespace_prefix: str = NAMESPACE_PREFIX, max_violations: int = MAX_SECURITY_VIOLATIONS):
        self.namespace_prefix = namespace_prefix
        self._namespaced_pattern = re.compile(rf"^{re.escape(namespace_prefix)}_([^_]+)_")
        self._permissions: dict[str, set[str]] = {}
        # Bounded: the oldest records fall off once max_violations is reached
        self._violations: deque[SecurityViolation] = deque(maxlen=max_violations)
        self._lock = threading.Lock()

    def initialize_project_permissions(self, project_ref: str) -> None:
        self.set_project_permissions(project_ref, set(DEFAULT_PERMISSIONS))

    def set_project_permissions(self, project_ref: str, permissions: set[str]) -> None:
        with self._lock:
            self._permissions[project_ref] = set(permissions)

    def revoke_project(self, project_ref: str) -> None:
        with self._lock:
            self._permissions.pop(project_ref, None)

    def is_initialized(self, project_ref: str) -> bool:
        with self._lock:
            return project_ref in self._permissions

    async def validate_project_access(self, function_id: str, project_ref: str) -> bool:
        if not function_id or not project_ref:
            self.log_violation(
                SecurityViolationType.INVALID_RESOURCE_ACCESS,
                source_project_ref=project_ref or "unknown",
                function_id=function_id,
                severity="medium",
                reason="Missing function id or project reference",
            )
            return False

        owner = self.extract_project(function_id)
        if owner != project_ref:
            self.log_violation(
                SecurityViolationType.NAMESPACE_BOUNDARY_VIOLATION,
                source_project_ref=owner or "unknown",
                target_project_ref=project_ref,
                function_id=function_id,
                severity="high",
                reason="Function does not belong to target project namespace",
            )
            return False

        with self._lock:
            permissions = self._permissions.get(project_ref)
        if not permissions or "function_access" not in permissions:
            self.log_violation(
                SecurityViolationType.UNAUTHORIZED_FUNCTION_CALL,
                source_project_ref=project_ref,
                function_id=function_id,
                severity="high",
                reason="Project lacks function access permissions",
            )
            return False

        return True

    async def enforce_project_boundaries(self, source_project: str, target_project: str) -> bool:
        """Same project is allowed; anything crossing projects is denied."""
        if source_project and source_project == target_project:
            return True

        self.log_violation(
            SecurityViolationType.CROSS_PROJECT_ACCESS,
            source_project_ref=source_project or "unknown",
            target_project_ref=target_project or "unknown",
            severity="high",
            reason="Cross-project access denied by security policy",
        )
        return False

    async def validate_cross_project_call(self, source_project: str, target_project: str, target_function: str) -> bool:
        allowed = await self.enforce_project_boundaries(source_project, target_project)
        if not allowed:
            logger.warning(
                "Denied call from project %s to %s in project %s",
                source_project, target_function, target_project,
            )
        return allowed

    def extract_project(self, function_id: str) -> str | None:
        """Project segment of "<prefix>_<project>_<name>" or "<project>:<name>"."""
        match = self._namespaced_pattern.match(function_id)
        if match:
            return match.group(1)
        scoped, sep, _ = function_id.partition(":")
        return scoped if sep and scoped else None

    def log_violation(
        self,
        violation_type: SecurityViolationType,
        source_project_ref: str,
        severity: str,
        target_project_ref: str | None = None,
        function_id: str | None = None,
        **details,
    ) -> SecurityViolation:
        violation = SecurityViolation(
            type=violation_type,
            source_project_ref=source_project_ref,
            target_project_ref=target_project_ref,
            function_id=function_id,
            severity=severity,
            details=details,
        )
        with self._lock:
            self._violations.append(violation)

        logger.log(
            _SEVERITY_LEVELS.get(severity, logging.INFO),
            "[SECURITY VIOLATION] %s: source=%s target=%s function=%s details=%s",
            violation_type.value, source_project_ref, target_project_ref, function_id, details,
        )
        return violation

    def get_violations(self, project_ref: str | None = None) -> list[SecurityViolation]:
        with self._lock:
            violations = list(self._violations)
        if project_ref is None:
            return violations
        return [
            v for v in violations
            if v.source_project_ref == project_ref or v.target_project_ref == project_ref
        ]
