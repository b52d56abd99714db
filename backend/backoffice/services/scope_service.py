# Overview: Service-layer operations for site scoping; resolves which sites a caller may see.

"""
Scope Resolver

WHY: Every ledger and inventory read is filtered by site. The admin's site
picker is not global state: routes build a ScopeContext per request and pass
it explicitly into every service call that reads site-partitioned data.

RULES:
- Cashiers are pinned to their assigned site, whatever they select.
- Admins and managers may select a single site or "all".
- "All sites" is only honored for admins; a manager asking for all sites
  is silently narrowed to their assigned site.
- Profit figures and the capital ledger are admin-only.
- Writes (checkout, restock) are limited to the assigned site, except for
  admins who may write to any site.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from ..extensions import db
from ..models import Site, User
from ..models.auth import ROLE_ADMIN, ROLE_MANAGER, ROLE_CASHIER, ROLES
from ..validation import coerce_int


ALL_SITES = "all"


class ScopeError(Exception):
    """Raised when a caller acts outside the sites their role allows."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


@dataclass(frozen=True)
class ScopeContext:
    """
    Effective query scope for one caller.

    selected_site_id is None when the caller asked for all sites.
    """
    user_id: int
    role: str
    assigned_site_id: int | None
    selected_site_id: int | None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    @property
    def is_manager(self) -> bool:
        return self.role == ROLE_MANAGER

    @property
    def is_cashier(self) -> bool:
        return self.role == ROLE_CASHIER


def parse_site_selection(raw: Any) -> int | None:
    """Parse a site picker value: "all", empty or None mean all sites."""
    if raw is None:
        return None
    if isinstance(raw, str) and raw.strip().lower() in ("", ALL_SITES, "all-sites"):
        return None
    return coerce_int(raw, "site_id")


def resolve_scope(user: User, selected_site_id: int | None = None) -> ScopeContext:
    if user.role not in ROLES:
        raise ScopeError(f"Unknown role {user.role!r}")

    if user.role == ROLE_CASHIER:
        if user.site_id is None:
            raise ScopeError("Cashier has no assigned site")
        selected_site_id = user.site_id
    elif selected_site_id is not None:
        site = db.session.get(Site, selected_site_id)
        if site is None:
            raise ScopeError("Site not found", details={"site_id": selected_site_id})

    return ScopeContext(
        user_id=user.id,
        role=user.role,
        assigned_site_id=user.site_id,
        selected_site_id=selected_site_id,
    )


def effective_site_ids(scope: ScopeContext) -> list[int] | None:
    """
    Sites a read is restricted to; None means every site (admin only).
    """
    if scope.selected_site_id is not None:
        return [scope.selected_site_id]
    if scope.is_admin:
        return None
    if scope.assigned_site_id is None:
        raise ScopeError("No site assigned to user")
    return [scope.assigned_site_id]


def apply_site_filter(query, column, scope: ScopeContext):
    site_ids = effective_site_ids(scope)
    if site_ids is None:
        return query
    return query.filter(column.in_(site_ids))


def site_in_scope(scope: ScopeContext, site_id: int) -> bool:
    site_ids = effective_site_ids(scope)
    return site_ids is None or site_id in site_ids


def can_see_profit(scope: ScopeContext) -> bool:
    return scope.is_admin


def require_admin(scope: ScopeContext) -> None:
    if not scope.is_admin:
        raise ScopeError("Admin role required")


def require_site_access(scope: ScopeContext, site_id: int) -> None:
    """Gate writes that target a site."""
    if scope.is_admin:
        return
    if scope.assigned_site_id != site_id:
        raise ScopeError(
            "Site is outside the caller's scope",
            details={"site_id": site_id, "assigned_site_id": scope.assigned_site_id},
        )


def default_write_site_id(scope: ScopeContext) -> int:
    """Site a write goes to when the caller doesn't name one."""
    site_id = scope.selected_site_id or scope.assigned_site_id
    if site_id is None:
        raise ScopeError("Select a site first")
    return site_id
