"""
Screen Contract Resolver.

A screen contract binds an operational screen (``qa``, ``packing`` …) to
the statuses it works on, extra queue filters and the permissions needed
to act from it.  The same ``ScreenContractSnapshot`` object feeds both the
screen's work queue and transition validation, so what a screen shows and
what it may act on cannot drift apart.

Published contracts are cached per screen until ``publish_contract``
commits the next version (or ``invalidate_contract_cache`` is called).
"""

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Mapping

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError

from orderflow.core.exceptions import InternalError, NotFoundError, ValidationError
from orderflow.models import db
from orderflow.models.audit import write_audit
from orderflow.models.order import ORDER_STATUSES, Order
from orderflow.models.workflow import ScreenContract

logger = logging.getLogger(__name__)

# Order columns a contract may filter on in addition to status
FILTERABLE_COLUMNS = {
    "priority": Order.priority,
    "service_category_code": Order.service_category_code,
    "delivery_type": Order.delivery_type,
    "has_issue": Order.has_issue,
    "has_split": Order.has_split,
}

DEFAULT_SCREEN_CONTRACTS = {
    "preparation": {"statuses": ["intake", "preparation"], "required_permissions": ["orders:prepare"]},
    "processing": {
        "statuses": ["processing", "sorting", "washing", "drying", "finishing"],
        "required_permissions": ["orders:process"],
    },
    "assembly": {"statuses": ["assembly"], "required_permissions": ["orders:assemble"]},
    "qa": {"statuses": ["qa", "ready"], "required_permissions": ["orders:qa"]},
    "packing": {"statuses": ["packing", "ready"], "required_permissions": ["orders:pack"]},
    "ready_release": {"statuses": ["ready"], "required_permissions": ["orders:release"]},
    "driver_delivery": {"statuses": ["out_for_delivery"], "required_permissions": ["orders:deliver"]},
}

_contract_cache: dict[str, "ScreenContractSnapshot"] = {}
_cache_lock = threading.Lock()


@dataclass(frozen=True)
class ScreenContractSnapshot:
    screen: str
    version: int
    statuses: tuple[str, ...]
    additional_filters: Mapping
    required_permissions: tuple[str, ...]

    def covers(self, status: str) -> bool:
        return status in self.statuses

    def queue_filter(self) -> dict:
        return {"statuses": list(self.statuses), "extra_filters": dict(self.additional_filters)}

    def to_dict(self) -> dict:
        return {
            "screen": self.screen,
            "version": self.version,
            "statuses": list(self.statuses),
            "additional_filters": dict(self.additional_filters),
            "required_permissions": list(self.required_permissions),
        }

    @classmethod
    def from_row(cls, row: ScreenContract) -> "ScreenContractSnapshot":
        return cls(
            screen=row.screen,
            version=row.version,
            statuses=tuple(row.statuses or ()),
            additional_filters=MappingProxyType(dict(row.additional_filters or {})),
            required_permissions=tuple(row.required_permissions or ()),
        )


def normalize_screen(screen) -> str:
    return str(screen or "").strip().lower()


def invalidate_contract_cache(screen: str | None = None) -> None:
    with _cache_lock:
        if screen is None:
            _contract_cache.clear()
        else:
            _contract_cache.pop(normalize_screen(screen), None)


def _latest_row(screen: str):
    return (
        ScreenContract.query
        .filter_by(screen=screen, is_published=True)
        .order_by(ScreenContract.version.desc())
        .first()
    )


def get_contract(screen_name: str) -> ScreenContractSnapshot:
    """Return the latest published contract for a screen.

    Raises:
        NotFoundError: no contract is published under that screen name.
    """
    screen = normalize_screen(screen_name)
    with _cache_lock:
        cached = _contract_cache.get(screen)
    if cached is not None:
        return cached

    row = _latest_row(screen)
    if row is None:
        raise NotFoundError(resource="ScreenContract", resource_id=screen)
    contract = ScreenContractSnapshot.from_row(row)
    with _cache_lock:
        _contract_cache.setdefault(screen, contract)
    return contract


def get_queue_filter(screen_name: str) -> dict:
    """``{statuses, extra_filters}`` for building the screen's work queue."""
    return get_contract(screen_name).queue_filter()


def build_queue_query(tenant_id: int, contract: ScreenContractSnapshot):
    """Tenant-scoped Order query for a screen's work queue.

    Takes the contract object itself so the queue and the permission check
    made against it come from the same published version.
    """
    query = Order.query.filter(
        Order.tenant_id == tenant_id,
        sa.func.lower(Order.status).in_(list(contract.statuses)),
    )
    for key, value in contract.additional_filters.items():
        column = FILTERABLE_COLUMNS[key]
        if isinstance(value, (list, tuple)):
            query = query.filter(column.in_(list(value)))
        else:
            query = query.filter(column == value)
    return query.order_by(Order.created_at.asc())


def _validate_contract(statuses, additional_filters, required_permissions) -> tuple:
    if not statuses or not isinstance(statuses, (list, tuple)):
        raise ValidationError("statuses must be a non-empty list", details={"field": "statuses"})
    norm_statuses = []
    for s in statuses:
        s = str(s or "").strip().lower()
        if s not in ORDER_STATUSES:
            raise ValidationError(f"Unknown status '{s}'", details={"field": "statuses"})
        if s not in norm_statuses:
            norm_statuses.append(s)

    filters = dict(additional_filters or {})
    unknown = sorted(set(filters) - set(FILTERABLE_COLUMNS))
    if unknown:
        raise ValidationError(
            "Unsupported additional_filters keys",
            details={"field": "additional_filters", "unknown": unknown,
                     "allowed": sorted(FILTERABLE_COLUMNS)},
        )

    perms = []
    for p in required_permissions or []:
        p = str(p).strip()
        resource, sep, action = p.partition(":")
        if not (resource and sep and action):
            raise ValidationError(
                f"Permission '{p}' must use the resource:action form",
                details={"field": "required_permissions"},
            )
        perms.append(p)
    if not perms:
        raise ValidationError(
            "required_permissions must list at least one permission",
            details={"field": "required_permissions"},
        )
    return norm_statuses, filters, perms


def publish_contract(screen_name: str, *, statuses, additional_filters=None,
                     required_permissions=None, published_by: str | None = None) -> ScreenContractSnapshot:
    """Insert and commit the next version of a screen contract.

    Earlier versions stay in the table untouched.  The cached contract is
    dropped only after the commit succeeds: a reader racing the publish can
    then cache nothing older than the committed version, and a failed
    publish leaves the cache alone.

    Raises:
        ValidationError: malformed contract.
        InternalError: the store rejected the write (rolled back).
    """
    screen = normalize_screen(screen_name)
    if not screen:
        raise ValidationError("screen is required", details={"field": "screen"})
    norm_statuses, filters, perms = _validate_contract(
        statuses, additional_filters, required_permissions,
    )

    try:
        current = _latest_row(screen)
        row = ScreenContract(
            screen=screen,
            version=(current.version + 1) if current else 1,
            statuses=norm_statuses,
            additional_filters=filters,
            required_permissions=perms,
            is_published=True,
            published_by=published_by,
            published_at=datetime.now(timezone.utc),
        )
        db.session.add(row)
        db.session.flush()
        write_audit(
            entity_type="screen_contract",
            entity_id=str(row.id),
            action="screen_contract.publish",
            actor=published_by or "system",
            diff={"screen": screen, "version": row.version, "statuses": norm_statuses,
                  "required_permissions": perms},
        )
        contract = ScreenContractSnapshot.from_row(row)
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        logger.exception("Publishing screen contract %s failed", screen, extra={"screen": screen})
        raise InternalError("Screen contract publish failed", details={"screen": screen}) from exc

    invalidate_contract_cache(screen)
    logger.info("Published screen contract %s v%d", screen, contract.version,
                extra={"screen": screen})
    return contract


class ScreenContractResolver:
    """Object form of the module functions, injectable into the engine."""

    def get_contract(self, screen_name: str) -> ScreenContractSnapshot:
        return get_contract(screen_name)

    def get_queue_filter(self, screen_name: str) -> dict:
        return get_queue_filter(screen_name)
