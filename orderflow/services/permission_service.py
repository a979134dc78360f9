"""
Permission Service: DB-driven RBAC with cache, wildcard matching and a
fail-closed permission gate.

Codenames follow ``resource:action``.  A granted ``resource:*`` satisfies
every action on that resource and ``*:*`` satisfies everything.

Evaluation is deterministic and deny-by-default:
  - the actor's permission set comes from the oracle (or is preloaded)
  - resource-scoped grants are consulted only when the unscoped
    permission is missing
  - any oracle failure is a deny
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

from flask import current_app, has_app_context

from orderflow.core.exceptions import PermissionDenied
from orderflow.models import db
from orderflow.models.auth import (
    Permission,
    ResourcePermission,
    Role,
    RolePermission,
    User,
    UserRole,
)

logger = logging.getLogger(__name__)

CACHE_TTL = 300  # 5 minutes
WILDCARD_ALL = "*:*"
PUBLIC_LINK_PERMISSIONS = frozenset({"orders:confirm_received"})

# Cache key: (user_id, tenant_id)
_permission_cache: dict[tuple[int, int], tuple[float, frozenset[str]]] = {}
_cache_lock = threading.Lock()

SUPERUSER_ROLES = {"platform_admin", "tenant_admin"}


# ═══════════════════════════════════════════════════════════════
# Actor
# ═══════════════════════════════════════════════════════════════
@dataclass(frozen=True)
class Actor:
    """Who is asking.  ``permissions`` short-circuits the oracle when set."""

    id: int | str
    tenant_id: int
    display_name: str = ""
    permissions: frozenset[str] | None = None
    is_public: bool = False

    @classmethod
    def public_link(cls, tenant_id: int) -> "Actor":
        """Synthetic actor for the unauthenticated confirmation link."""
        return cls(
            id="public-link",
            tenant_id=tenant_id,
            display_name="Public link",
            permissions=PUBLIC_LINK_PERMISSIONS,
            is_public=True,
        )


def permission_matches(granted, code: str) -> bool:
    """True if ``code`` is covered by ``granted`` (exact, ``resource:*`` or ``*:*``)."""
    if code in granted or WILDCARD_ALL in granted:
        return True
    resource, sep, _action = code.partition(":")
    return bool(sep) and f"{resource}:*" in granted


# ═══════════════════════════════════════════════════════════════
# Cache
# ═══════════════════════════════════════════════════════════════
def _cache_ttl() -> int:
    if has_app_context():
        return current_app.config.get("PERMISSION_CACHE_TTL", CACHE_TTL)
    return CACHE_TTL


def _get_cached(key: tuple[int, int]) -> Optional[frozenset[str]]:
    with _cache_lock:
        entry = _permission_cache.get(key)
        if entry is None:
            return None
        cached_at, perms = entry
        if time.time() - cached_at > _cache_ttl():
            del _permission_cache[key]
            return None
        return perms


def _set_cached(key: tuple[int, int], perms: frozenset[str]) -> None:
    with _cache_lock:
        _permission_cache[key] = (time.time(), perms)


def invalidate_cache(user_id: int) -> None:
    with _cache_lock:
        keys = [k for k in _permission_cache if k[0] == user_id]
        for k in keys:
            _permission_cache.pop(k, None)


def invalidate_all_cache() -> None:
    with _cache_lock:
        _permission_cache.clear()


# ═══════════════════════════════════════════════════════════════
# Oracle (RBAC tables)
# ═══════════════════════════════════════════════════════════════
class DatabasePermissionOracle:
    """Permission oracle over the roles / permissions / grants tables."""

    def list_permissions(self, actor: Actor) -> frozenset[str]:
        key = (int(actor.id), actor.tenant_id)
        cached = _get_cached(key)
        if cached is not None:
            return cached

        user = db.session.get(User, int(actor.id))
        if user is None or user.tenant_id != actor.tenant_id or user.status != "active":
            _set_cached(key, frozenset())
            return frozenset()

        rows = (
            db.session.query(Role.id, Role.name, UserRole.tenant_id)
            .join(UserRole, UserRole.role_id == Role.id)
            .filter(UserRole.user_id == user.id, UserRole.is_active.is_(True))
            .all()
        )
        role_ids = set()
        role_names = set()
        for role_id, role_name, ur_tenant_id in rows:
            # Rows without explicit tenant inherit the user's tenant
            effective_tenant_id = ur_tenant_id if ur_tenant_id is not None else user.tenant_id
            if effective_tenant_id != actor.tenant_id:
                continue
            role_ids.add(role_id)
            role_names.add(role_name)

        if role_names & SUPERUSER_ROLES:
            perms = frozenset({WILDCARD_ALL})
        elif not role_ids:
            perms = frozenset()
        else:
            codenames = (
                db.session.query(Permission.codename)
                .join(RolePermission, RolePermission.permission_id == Permission.id)
                .filter(RolePermission.role_id.in_(sorted(role_ids)))
                .distinct()
                .all()
            )
            perms = frozenset(r[0] for r in codenames)

        _set_cached(key, perms)
        return perms

    def check_resource_permission(self, actor: Actor, code: str,
                                  resource_type: str, resource_id) -> bool:
        grants = (
            db.session.query(ResourcePermission.codename)
            .filter(
                ResourcePermission.tenant_id == actor.tenant_id,
                ResourcePermission.user_id == int(actor.id),
                ResourcePermission.resource_type == resource_type,
                ResourcePermission.resource_id == str(resource_id),
            )
            .all()
        )
        return permission_matches({g[0] for g in grants}, code)


# ═══════════════════════════════════════════════════════════════
# Gate
# ═══════════════════════════════════════════════════════════════
class PermissionGate:
    """can / can_any / can_all over an oracle, fail-closed."""

    def __init__(self, oracle=None):
        self.oracle = oracle or DatabasePermissionOracle()

    def _granted(self, actor: Actor) -> frozenset[str] | None:
        if actor.permissions is not None:
            return frozenset(actor.permissions)
        try:
            return frozenset(self.oracle.list_permissions(actor))
        except Exception:
            logger.exception("Permission oracle failed for actor=%s; denying", actor.id,
                             extra={"actor_id": str(actor.id), "tenant_id": actor.tenant_id})
            return None

    def _scoped(self, actor: Actor, code: str, resource_type, resource_id) -> bool:
        if resource_type is None or resource_id is None or actor.is_public:
            return False
        try:
            return bool(self.oracle.check_resource_permission(actor, code, resource_type, resource_id))
        except Exception:
            logger.exception("Resource permission check failed for actor=%s code=%s; denying",
                             actor.id, code)
            return False

    def can(self, actor: Actor, code: str, resource_type: str | None = None,
            resource_id=None) -> bool:
        granted = self._granted(actor)
        if granted is None:
            return False
        if permission_matches(granted, code):
            return True
        return self._scoped(actor, code, resource_type, resource_id)

    def missing(self, actor: Actor, codes, resource_type: str | None = None,
                resource_id=None) -> list[str]:
        """Codes from ``codes`` the actor does not hold (all of them on oracle failure)."""
        granted = self._granted(actor)
        if granted is None:
            return list(codes)
        return [
            c for c in codes
            if not permission_matches(granted, c)
            and not self._scoped(actor, c, resource_type, resource_id)
        ]

    def can_any(self, actor: Actor, codes, resource_type: str | None = None,
                resource_id=None) -> bool:
        codes = list(codes)
        return len(self.missing(actor, codes, resource_type, resource_id)) < len(codes)

    def can_all(self, actor: Actor, codes, resource_type: str | None = None,
                resource_id=None) -> bool:
        return not self.missing(actor, list(codes), resource_type, resource_id)

    def require(self, actor: Actor, codes, resource_type: str | None = None,
                resource_id=None) -> None:
        """Raise PermissionDenied unless the actor holds every code."""
        codes = [codes] if isinstance(codes, str) else list(codes)
        missing = self.missing(actor, codes, resource_type, resource_id)
        if missing:
            raise PermissionDenied(actor.id, codes, missing)

    def evaluate(self, actor: Actor, code: str) -> dict:
        """Explain a decision: which grant matched, or why it was denied."""
        granted = self._granted(actor)
        if granted is None:
            return {"allowed": False, "decision": "deny_oracle_error", "matched": None}
        if code in granted:
            return {"allowed": True, "decision": "allow_exact", "matched": code}
        resource = code.partition(":")[0]
        if f"{resource}:*" in granted:
            return {"allowed": True, "decision": "allow_resource_wildcard", "matched": f"{resource}:*"}
        if WILDCARD_ALL in granted:
            return {"allowed": True, "decision": "allow_global_wildcard", "matched": WILDCARD_ALL}
        return {"allowed": False, "decision": "deny_missing_permission", "matched": None}
