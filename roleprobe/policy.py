"""
Security Policy Model
=====================
Declarative RBAC policy: permission rules, role definitions and the role
hierarchy with its escalation paths and isolation boundaries.

The hierarchy is a DAG. A role lists the junior roles it inherits from in
`inherit_from`; an edge therefore points from a senior role to a junior one,
and "outranks" is reachability along those edges. Declared integer levels
are only cross-checked against the edges, never used for ordering.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple, FrozenSet, Iterable, Any

from .errors import ConfigurationError
from .models import Severity, to_plain


class PermissionLevel(Enum):
    READ = "read"
    WRITE = "write"
    DELETE = "delete"
    ADMIN = "admin"

    def violation_severity(self) -> Severity:
        """Severity of a granted-but-denied access at this level"""
        if self in (PermissionLevel.ADMIN, PermissionLevel.DELETE):
            return Severity.CRITICAL
        if self is PermissionLevel.WRITE:
            return Severity.HIGH
        return Severity.MEDIUM


class BoundaryType(Enum):
    TENANT = "tenant"
    ROLE = "role"
    DATA = "data"
    MODULE = "module"


@dataclass(frozen=True)
class PermissionRule:
    """Allow/deny policy for one resource + action"""
    resource: str
    action: str
    allowed_roles: FrozenSet[str]
    denied_roles: FrozenSet[str] = frozenset()
    permission_level: PermissionLevel = PermissionLevel.READ
    requires_tenant_context: bool = False
    requires_data_scope: bool = False
    business_context: str = ""

    def __post_init__(self):
        object.__setattr__(self, "allowed_roles", frozenset(self.allowed_roles))
        object.__setattr__(self, "denied_roles", frozenset(self.denied_roles))
        object.__setattr__(self, "permission_level", PermissionLevel(self.permission_level))
        overlap = self.allowed_roles & self.denied_roles
        if overlap:
            raise ConfigurationError(
                f"Rule {self.action} {self.resource}: roles both allowed and denied: {sorted(overlap)}"
            )

    def expects_allow(self, role: str) -> bool:
        return role in self.allowed_roles and role not in self.denied_roles

    @property
    def rule_id(self) -> str:
        return f"{self.action}:{self.resource}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "resource": self.resource,
            "action": self.action,
            "allowed_roles": sorted(self.allowed_roles),
            "denied_roles": sorted(self.denied_roles),
            "permission_level": self.permission_level.value,
            "requires_tenant_context": self.requires_tenant_context,
            "requires_data_scope": self.requires_data_scope,
            "business_context": self.business_context,
        }


@dataclass(frozen=True)
class RoleDefinition:
    name: str
    level: int
    permissions: Tuple[str, ...] = ()
    data_scopes: Tuple[str, ...] = ()
    tenant_access: str = "single"
    admin_capabilities: bool = False
    inherit_from: Tuple[str, ...] = ()

    def __post_init__(self):
        for attr in ("permissions", "data_scopes", "inherit_from"):
            object.__setattr__(self, attr, tuple(getattr(self, attr)))

    def to_dict(self) -> Dict[str, Any]:
        return to_plain({
            "name": self.name,
            "level": self.level,
            "permissions": self.permissions,
            "data_scopes": self.data_scopes,
            "tenant_access": self.tenant_access,
            "admin_capabilities": self.admin_capabilities,
            "inherit_from": self.inherit_from,
        })


@dataclass(frozen=True)
class EscalationPath:
    """A lower → higher role route whose methods must all be blocked"""
    from_role: str
    to_role: str
    methods: Tuple[str, ...]
    vulnerability_type: str = "vertical"   # vertical or horizontal
    risk_level: Severity = Severity.HIGH
    detection_signatures: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "methods", tuple(self.methods))
        object.__setattr__(self, "detection_signatures", tuple(self.detection_signatures))
        object.__setattr__(self, "risk_level", Severity(self.risk_level))

    @property
    def path_id(self) -> str:
        return f"{self.from_role}->{self.to_role}"

    def to_dict(self) -> Dict[str, Any]:
        return to_plain({
            "from_role": self.from_role,
            "to_role": self.to_role,
            "methods": self.methods,
            "vulnerability_type": self.vulnerability_type,
            "risk_level": self.risk_level,
            "detection_signatures": self.detection_signatures,
        })


@dataclass(frozen=True)
class IsolationBoundary:
    boundary_type: BoundaryType
    enforcer: str
    test_methods: Tuple[str, ...]
    bypass_techniques: Tuple[str, ...] = ()
    validation_rules: Tuple[str, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "boundary_type", BoundaryType(self.boundary_type))
        for attr in ("test_methods", "bypass_techniques", "validation_rules"):
            object.__setattr__(self, attr, tuple(getattr(self, attr)))

    def to_dict(self) -> Dict[str, Any]:
        return to_plain({
            "boundary_type": self.boundary_type,
            "enforcer": self.enforcer,
            "test_methods": self.test_methods,
            "bypass_techniques": self.bypass_techniques,
            "validation_rules": self.validation_rules,
        })


class RoleHierarchy:
    """
    Role DAG with escalation paths and isolation boundaries.

    Raises ConfigurationError on unknown roles, cycles, or an inheritance
    edge whose junior role does not have a strictly lower declared level.
    """

    def __init__(
        self,
        roles: Iterable[RoleDefinition],
        escalation_paths: Iterable[EscalationPath] = (),
        isolation_boundaries: Iterable[IsolationBoundary] = (),
    ):
        self.roles: Dict[str, RoleDefinition] = {}
        for definition in roles:
            if definition.name in self.roles:
                raise ConfigurationError(f"Duplicate role definition: {definition.name}")
            self.roles[definition.name] = definition

        self.escalation_paths: Tuple[EscalationPath, ...] = tuple(escalation_paths)
        self.isolation_boundaries: Tuple[IsolationBoundary, ...] = tuple(isolation_boundaries)

        self._validate_edges()
        self._check_acyclic()
        self._descendants = {name: self._walk(name) for name in self.roles}

        for path in self.escalation_paths:
            for role in (path.from_role, path.to_role):
                if role not in self.roles:
                    raise ConfigurationError(f"Escalation path {path.path_id} names unknown role {role}")

    # ─────────────────────────────────────────────────────────────
    # VALIDATION
    # ─────────────────────────────────────────────────────────────

    def _validate_edges(self):
        for senior in self.roles.values():
            for junior_name in senior.inherit_from:
                junior = self.roles.get(junior_name)
                if junior is None:
                    raise ConfigurationError(f"{senior.name} inherits from unknown role {junior_name}")
                if junior.level >= senior.level:
                    raise ConfigurationError(
                        f"{senior.name} (level {senior.level}) inherits from "
                        f"{junior_name} (level {junior.level}); junior level must be lower"
                    )

    def _check_acyclic(self):
        WHITE, GREY, BLACK = 0, 1, 2
        colour = {name: WHITE for name in self.roles}

        def visit(name, trail):
            colour[name] = GREY
            for nxt in self.roles[name].inherit_from:
                if colour[nxt] == GREY:
                    cycle = " -> ".join(trail + [name, nxt])
                    raise ConfigurationError(f"Role hierarchy has a cycle: {cycle}")
                if colour[nxt] == WHITE:
                    visit(nxt, trail + [name])
            colour[name] = BLACK

        for name in self.roles:
            if colour[name] == WHITE:
                visit(name, [])

    def _walk(self, start: str) -> FrozenSet[str]:
        seen = set()
        stack = list(self.roles[start].inherit_from)
        while stack:
            name = stack.pop()
            if name in seen:
                continue
            seen.add(name)
            stack.extend(self.roles[name].inherit_from)
        return frozenset(seen)

    # ─────────────────────────────────────────────────────────────
    # ORDER RELATIONS
    # ─────────────────────────────────────────────────────────────

    def juniors(self, role: str) -> FrozenSet[str]:
        """Every role this one transitively inherits from"""
        self._require(role)
        return self._descendants[role]

    def seniors(self, role: str) -> FrozenSet[str]:
        self._require(role)
        return frozenset(name for name, below in self._descendants.items() if role in below)

    def outranks(self, senior: str, junior: str) -> bool:
        self._require(senior)
        self._require(junior)
        return junior in self._descendants[senior]

    def comparable(self, a: str, b: str) -> bool:
        return self.outranks(a, b) or self.outranks(b, a)

    def order(self, a: str, b: str) -> Optional[Tuple[str, str]]:
        """(lower, higher) for comparable roles, None otherwise"""
        if self.outranks(a, b):
            return b, a
        if self.outranks(b, a):
            return a, b
        return None

    def rank(self, role: str) -> int:
        """Length of the longest inheritance chain below a role"""
        self._require(role)
        children = self.roles[role].inherit_from
        if not children:
            return 0
        return 1 + max(self.rank(c) for c in children)

    def is_admin(self, role: str) -> bool:
        definition = self.roles.get(role)
        return bool(definition and definition.admin_capabilities)

    def roles_by_rank(self) -> List[str]:
        """Highest rank first; declaration order breaks ties"""
        names = list(self.roles)
        return sorted(names, key=lambda n: (-self.rank(n), names.index(n)))

    def _require(self, role: str):
        if role not in self.roles:
            raise KeyError(f"Unknown role: {role}")

    def __contains__(self, role: str) -> bool:
        return role in self.roles

    def to_dict(self) -> Dict[str, Any]:
        return {
            "roles": [r.to_dict() for r in self.roles.values()],
            "escalation_paths": [p.to_dict() for p in self.escalation_paths],
            "isolation_boundaries": [b.to_dict() for b in self.isolation_boundaries],
        }
