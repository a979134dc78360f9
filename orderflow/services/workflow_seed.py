"""
Seed data for a fresh installation: permission catalogue, system roles and
the default screen contracts.  Idempotent; run through ``flask seed-workflow``.
"""

import logging

from orderflow.models import db
from orderflow.models.auth import Permission, Role, RolePermission
from orderflow.models.workflow import ScreenContract
from orderflow.services.screen_contract_service import (
    DEFAULT_SCREEN_CONTRACTS,
    invalidate_contract_cache,
    publish_contract,
)

logger = logging.getLogger(__name__)

PERMISSIONS = {
    "orders:transition": "Change order status",
    "orders:prepare": "Work the preparation screen",
    "orders:process": "Work the processing screen",
    "orders:assemble": "Work the assembly screen",
    "orders:qa": "Work the QA screen",
    "orders:pack": "Work the packing screen",
    "orders:release": "Release ready orders",
    "orders:deliver": "Work the driver delivery screen",
    "orders:split": "Split orders",
    "orders:issues": "Create and resolve item issues",
    "orders:confirm_received": "Confirm receipt via public link",
    "orders:*": "All order actions",
    "workflow:admin": "Manage workflow configuration",
}

SYSTEM_ROLES = {
    "tenant_admin": [],  # superuser; permissions resolved as *:*
    "operations_manager": ["orders:*", "workflow:admin"],
    "floor_operator": [
        "orders:transition", "orders:prepare", "orders:process", "orders:assemble",
        "orders:qa", "orders:pack", "orders:issues",
    ],
    "driver": ["orders:deliver"],
}


def seed_permissions() -> int:
    created = 0
    for codename, display_name in PERMISSIONS.items():
        if Permission.query.filter_by(codename=codename).first() is None:
            db.session.add(Permission(
                codename=codename,
                category=codename.split(":", 1)[0],
                display_name=display_name,
            ))
            created += 1
    db.session.flush()
    return created


def seed_roles() -> int:
    created = 0
    perms = {p.codename: p for p in Permission.query.all()}
    for name, codenames in SYSTEM_ROLES.items():
        role = Role.query.filter_by(tenant_id=None, name=name).first()
        if role is None:
            role = Role(name=name, display_name=name.replace("_", " ").title(), is_system=True)
            db.session.add(role)
            db.session.flush()
            created += 1
        granted = {rp.permission_id for rp in role.role_permissions}
        for codename in codenames:
            perm = perms[codename]
            if perm.id not in granted:
                db.session.add(RolePermission(role_id=role.id, permission_id=perm.id))
    db.session.flush()
    return created


def seed_screen_contracts(published_by: str = "system") -> int:
    created = 0
    for screen, contract in DEFAULT_SCREEN_CONTRACTS.items():
        if ScreenContract.query.filter_by(screen=screen).first() is not None:
            continue
        publish_contract(
            screen,
            statuses=contract["statuses"],
            additional_filters=contract.get("additional_filters", {}),
            required_permissions=contract["required_permissions"],
            published_by=published_by,
        )
        created += 1
    invalidate_contract_cache()
    return created


def seed_all() -> dict:
    """Seed everything and commit."""
    result = {
        "permissions": seed_permissions(),
        "roles": seed_roles(),
        "screen_contracts": seed_screen_contracts(),
    }
    db.session.commit()
    logger.info("Workflow seed: %s", result)
    return result
