"""
Route Access Rules

WHY: The web client and the API share one definition of who may open which
screen. The client asks /api/auth/route-access before rendering; the API
decorators apply the same role lists to endpoints.

RULES (resolve_route_access):
1. Public paths need no user
2. No user -> /login
3. subscription_status other than "active" -> /subscription-expired
4. Role not allowed for the path -> /unauthorized
5. Paths that match nothing -> /login (the client's catch-all)

Patterns are matched in order; ":param" segments match one path segment.
"""

from __future__ import annotations

import re

# =============================================================================
# ROLES
# =============================================================================

OWNER = ("owner",)
MANAGEMENT = ("owner", "manager")
SELLERS = ("owner", "manager", "cashier")
ALL_ROLES = ("owner", "manager", "cashier", "staff")

LOGIN_PATH = "/login"
UNAUTHORIZED_PATH = "/unauthorized"
SUBSCRIPTION_EXPIRED_PATH = "/subscription-expired"

PUBLIC_PATHS = (
    LOGIN_PATH,
    SUBSCRIPTION_EXPIRED_PATH,
    UNAUTHORIZED_PATH,
    "/create-tenant",
    "/reset-password",
)


# =============================================================================
# ROUTE TABLE
# =============================================================================

ROUTE_ACCESS: list[tuple[str, tuple[str, ...]]] = [
    # Tenant (owner) screens
    ("/tenant", OWNER),
    ("/tenant/dashboard", OWNER),
    ("/tenant/branches", OWNER),
    ("/tenant/branches/new", OWNER),
    ("/tenant/branches/create-workflow", OWNER),
    ("/tenant/branches/:id", OWNER),
    ("/tenant/users", OWNER),
    ("/tenant/reports", OWNER),
    ("/tenant/purchases-summary", OWNER),
    ("/tenant/purchases-summary/total-purchase", OWNER),
    ("/tenant/purchases-summary/items-purchased", OWNER),
    ("/tenant/purchases-summary/suppliers", OWNER),
    ("/tenant/sales", OWNER),
    ("/tenant/sales/total-sales", OWNER),
    ("/tenant/sales/total-items-sold", OWNER),
    ("/tenant/sales/top-salesperson", OWNER),
    ("/tenant/stock", OWNER),
    ("/tenant/stock/movement-history", OWNER),
    ("/tenant/stock/item/:id", OWNER),
    ("/tenant/finance", OWNER),

    # Branch screens
    ("/branch", MANAGEMENT),
    ("/branch/dashboard", MANAGEMENT),
    ("/branch/sales", MANAGEMENT),
    ("/branch/sales/pos", SELLERS),
    ("/branch/sales/history", MANAGEMENT),
    ("/branch/sales/refunds", MANAGEMENT),
    ("/branch/sales/new", SELLERS),
    ("/branch/sales/edit/:id", SELLERS),
    ("/branch/sales/view/:id", SELLERS),
    ("/branch/sales/:id", SELLERS),
    ("/branch/stock", ALL_ROLES),
    ("/branch/stock/inventory", ALL_ROLES),
    ("/branch/stock/add-product", MANAGEMENT),
    ("/branch/stock/edit-product/:id", MANAGEMENT),
    ("/branch/stock/view-product/:id", ALL_ROLES),
    ("/branch/stock/product/:id", ALL_ROLES),
    ("/branch/stock/categories", ALL_ROLES),
    ("/branch/stock/summary", MANAGEMENT),
    ("/branch/purchases", MANAGEMENT),
    ("/branch/purchases/add", MANAGEMENT),
    ("/branch/purchases/new", MANAGEMENT),
    ("/branch/purchases/history", MANAGEMENT),
    ("/branch/purchases/edit/:id", MANAGEMENT),
    ("/branch/purchases/view/:id", MANAGEMENT),
    ("/branch/purchases/:id", MANAGEMENT),
    ("/branch/suppliers/returns", MANAGEMENT),
    ("/branch/invoices", MANAGEMENT),
    ("/branch/bills", MANAGEMENT),
    ("/branch/audits/stock-audit", MANAGEMENT),
    ("/branch/audits/stock-audit/new", MANAGEMENT),
    ("/branch/audits/stock-audit/edit/:id", MANAGEMENT),
    ("/branch/audits/stock-audit/:id", MANAGEMENT),
    ("/branch/customers", ALL_ROLES),
    ("/branch/customers/add", SELLERS),
    ("/branch/customers/new", SELLERS),
    ("/branch/customers/edit/:id", SELLERS),
    ("/branch/customers/view/:id", ALL_ROLES),
    ("/branch/customers/:id", ALL_ROLES),
    ("/branch/suppliers", MANAGEMENT),
    ("/branch/suppliers/add", MANAGEMENT),
    ("/branch/suppliers/new", MANAGEMENT),
    ("/branch/suppliers/edit/:id", MANAGEMENT),
    ("/branch/suppliers/view/:id", MANAGEMENT),
    ("/branch/suppliers/:id", MANAGEMENT),
    ("/branch/reports", MANAGEMENT),
    ("/branch/settings", MANAGEMENT),
    ("/manager", MANAGEMENT),
    ("/sales", ALL_ROLES),
]


def _compile(pattern: str) -> re.Pattern:
    parts = []
    for segment in pattern.strip("/").split("/"):
        parts.append("[^/]+" if segment.startswith(":") else re.escape(segment))
    return re.compile("^/" + "/".join(parts) + "$")


_COMPILED = [(_compile(pattern), roles) for pattern, roles in ROUTE_ACCESS]


def _normalize(path: str) -> str:
    path = (path or "/").split("?", 1)[0].split("#", 1)[0]
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/")
    return path


def roles_for_path(path: str) -> tuple[str, ...] | None:
    """Allowed roles for a path, or None when the path is not a known screen."""
    path = _normalize(path)
    for regex, roles in _COMPILED:
        if regex.match(path):
            return roles
    return None


def is_public_path(path: str) -> bool:
    return _normalize(path) in PUBLIC_PATHS


def resolve_route_access(path: str, user) -> str | None:
    """
    Decide whether `user` may open `path`.

    Returns None when access is allowed, otherwise the path to redirect to.
    `user` is a User (or anything with role and subscription_status) or None.
    """
    if is_public_path(path):
        return None

    roles = roles_for_path(path)
    if roles is None:
        return LOGIN_PATH

    if user is None:
        return LOGIN_PATH

    if user.subscription_status != "active":
        return SUBSCRIPTION_EXPIRED_PATH

    if user.role not in roles:
        return UNAUTHORIZED_PATH

    return None
