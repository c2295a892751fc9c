"""Role-based access control.

The role, endpoint and resource tables form one immutable ``RBACPolicy``
built at startup and handed to ``RBACResolver``. Resolution is stateless
per call. Endpoints missing from the table are denied.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Optional, Protocol, Tuple

from clinauth.logging import get_logger

logger = get_logger(__name__)

WILDCARD_RESOURCE = "all"
OWN_PREFIX = "own_"
# Context keys that name the owner of the resource being acted on
OWNER_CONTEXT_KEYS = ("userId", "user_id", "patientId", "patient_id", "ownerId", "owner_id")


class Subject(Protocol):
    id: str
    role: str


ContextPredicate = Callable[[Subject, str, str, Mapping[str, Any]], bool]


ROLE_PERMISSIONS: Dict[str, Tuple[str, ...]] = {
    "patient": (
        "read:own_profile",
        "update:own_profile",
        "read:own_appointments",
        "read:own_medical_records",
        "create:own_appointment_requests",
    ),
    "nurse": (
        "read:patients",
        "update:patient_vitals",
        "read:appointments",
        "create:notes",
        "read:medical_records",
        "update:patient_status",
        "read:schedules",
    ),
    "doctor": (
        "read:patients",
        "update:patients",
        "read:appointments",
        "create:appointments",
        "update:appointments",
        "delete:appointments",
        "create:prescriptions",
        "update:prescriptions",
        "read:medical_records",
        "create:medical_records",
        "update:medical_records",
        "read:schedules",
        "update:schedules",
    ),
    "pharmacist": (
        "read:prescriptions",
        "update:prescriptions",
    ),
    "staff": (
        "read:appointments",
        "read:schedules",
    ),
    "admin": (
        "read:all",
        "create:all",
        "update:all",
        "delete:all",
        "manage:users",
        "manage:roles",
        "read:audit_logs",
        "manage:system_settings",
    ),
}

RESOURCE_ACTIONS: Dict[str, Tuple[str, ...]] = {
    "profile": ("read", "update"),
    "appointments": ("read", "create", "update", "delete"),
    "patients": ("read", "create", "update", "delete"),
    "medical_records": ("read", "create", "update", "delete"),
    "prescriptions": ("read", "create", "update", "delete"),
    "vitals": ("read", "create", "update"),
    "notes": ("read", "create", "update", "delete"),
    "schedules": ("read", "create", "update", "delete"),
    "users": ("read", "create", "update", "delete"),
    "roles": ("read", "create", "update", "delete"),
    "audit_logs": ("read",),
    "system_settings": ("read", "update"),
}

ENDPOINT_PERMISSIONS: Dict[Tuple[str, str], str] = {
    ("GET", "/api/profile"): "read:own_profile",
    ("PUT", "/api/profile"): "update:own_profile",
    ("GET", "/api/appointments"): "read:appointments",
    ("POST", "/api/appointments"): "create:appointments",
    ("PUT", "/api/appointments/:id"): "update:appointments",
    ("DELETE", "/api/appointments/:id"): "delete:appointments",
    ("GET", "/api/patients"): "read:patients",
    ("POST", "/api/patients"): "create:patients",
    ("PUT", "/api/patients/:id"): "update:patients",
    ("DELETE", "/api/patients/:id"): "delete:patients",
    ("GET", "/api/medical-records"): "read:medical_records",
    ("POST", "/api/medical-records"): "create:medical_records",
    ("PUT", "/api/medical-records/:id"): "update:medical_records",
    ("GET", "/api/users"): "manage:users",
    ("POST", "/api/users"): "manage:users",
    ("PUT", "/api/users/:id"): "manage:users",
    ("DELETE", "/api/users/:id"): "manage:users",
    ("GET", "/api/audit-logs"): "read:audit_logs",
}


def split_permission(permission: str) -> Tuple[str, str]:
    action, sep, resource = permission.partition(":")
    if not sep or not action or not resource:
        raise ValueError(f"permission must be 'action:resource', got {permission!r}")
    return action, resource


def _normalize_path(path: str) -> str:
    path = path.split("?", 1)[0]
    if len(path) > 1:
        path = path.rstrip("/")
    return path or "/"


def _compile_pattern(path: str) -> "re.Pattern[str]":
    parts = []
    for segment in _normalize_path(path).split("/"):
        if segment.startswith(":"):
            parts.append("[^/]+")
        else:
            parts.append(re.escape(segment))
    return re.compile("^" + "/".join(parts) + "$")


@dataclass(frozen=True)
class RBACPolicy:
    """Immutable role/endpoint/resource tables."""

    role_permissions: Mapping[str, FrozenSet[str]]
    endpoint_permissions: Mapping[Tuple[str, str], str]
    resource_actions: Mapping[str, Tuple[str, ...]] = field(
        default_factory=lambda: MappingProxyType({})
    )
    _patterns: Tuple[Tuple[str, "re.Pattern[str]", str], ...] = field(
        default=(), repr=False, compare=False
    )

    @classmethod
    def from_mapping(
        cls,
        role_permissions: Mapping[str, Iterable[str]],
        endpoint_permissions: Mapping[Tuple[str, str], str],
        resource_actions: Optional[Mapping[str, Iterable[str]]] = None,
    ) -> "RBACPolicy":
        roles = {}
        for role, permissions in role_permissions.items():
            perms = frozenset(permissions)
            for permission in perms:
                split_permission(permission)
            roles[role] = perms
        endpoints = {}
        patterns = []
        for (method, path), permission in endpoint_permissions.items():
            split_permission(permission)
            key = (method.upper(), _normalize_path(path))
            endpoints[key] = permission
            if ":" in path:
                patterns.append((key[0], _compile_pattern(path), permission))
        actions = {
            resource: tuple(values)
            for resource, values in (resource_actions or {}).items()
        }
        return cls(
            role_permissions=MappingProxyType(roles),
            endpoint_permissions=MappingProxyType(endpoints),
            resource_actions=MappingProxyType(actions),
            _patterns=tuple(patterns),
        )

    def permissions_for(self, role: str) -> FrozenSet[str]:
        return self.role_permissions.get(role, frozenset())

    def required_permission(self, method: str, path: str) -> Optional[str]:
        method = method.upper()
        normalized = _normalize_path(path)
        exact = self.endpoint_permissions.get((method, normalized))
        if exact:
            return exact
        for pattern_method, pattern, permission in self._patterns:
            if pattern_method == method and pattern.match(normalized):
                return permission
        return None


def default_policy() -> RBACPolicy:
    return RBACPolicy.from_mapping(ROLE_PERMISSIONS, ENDPOINT_PERMISSIONS, RESOURCE_ACTIONS)


def owns_resource(subject: Subject, context: Optional[Mapping[str, Any]]) -> bool:
    """True only when every owner id named in ``context`` is the subject's."""
    if not context:
        return False
    owners = [context[key] for key in OWNER_CONTEXT_KEYS if context.get(key) is not None]
    if not owners:
        return False
    return all(str(owner) == str(subject.id) for owner in owners)


def assigned_patients_predicate(
    assignments: Callable[[str], Iterable[str]],
) -> ContextPredicate:
    """Limit a clinical role to patients returned by ``assignments(user_id)``.

    Requests without a patient id in context are allowed (list endpoints).
    """

    def _check(subject: Subject, resource: str, action: str, context: Mapping[str, Any]) -> bool:
        patient_id = context.get("patientId") or context.get("patient_id") or context.get("id")
        if patient_id is None:
            return True
        return str(patient_id) in {str(pid) for pid in assignments(subject.id)}

    return _check


class RBACResolver:
    def __init__(
        self,
        policy: RBACPolicy,
        predicates: Optional[Mapping[Tuple[str, str], ContextPredicate]] = None,
    ) -> None:
        self.policy = policy
        self._predicates: Mapping[Tuple[str, str], ContextPredicate] = MappingProxyType(
            dict(predicates or {})
        )

    def permissions_for(self, role: str) -> FrozenSet[str]:
        return self.policy.permissions_for(role)

    def resource_actions(self, resource: str) -> Tuple[str, ...]:
        return tuple(self.policy.resource_actions.get(resource, ()))

    def has_permission(
        self,
        subject: Subject,
        resource: str,
        action: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        permissions = self.permissions_for(subject.role)

        if f"{action}:{WILDCARD_RESOURCE}" in permissions:
            return True

        if f"{action}:{resource}" in permissions:
            predicate = self._predicates.get((subject.role, resource))
            if predicate is None:
                return True
            return bool(predicate(subject, resource, action, context or {}))

        if f"{action}:{OWN_PREFIX}{resource}" in permissions:
            return owns_resource(subject, context)

        return False

    def can_access_endpoint(
        self,
        subject: Subject,
        path: str,
        method: str,
        context: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        required = self.policy.required_permission(method, path)
        if required is None:
            logger.info(
                "endpoint_not_mapped", method=method.upper(), path=path, role=subject.role
            )
            return False
        action, resource = split_permission(required)
        return self.has_permission(subject, resource, action, context)
