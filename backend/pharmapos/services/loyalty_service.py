# Overview: Service-layer operations for the loyalty points ledger.

"""
Loyalty Points Ledger

WHY: Customers see a running balance (Customer.loyalty_points) while the
business needs an auditable history (LoyaltyTransaction). Both are written
in ONE transaction:

1. Lock the customer row and read the current balance from the database
2. Validate the amount against that balance (never a balance the client
   displayed some time ago)
3. Insert the ledger row with before/after balances
4. Update the customer's balance to the same after value
5. Commit once

Customer.version_id turns a concurrent balance write into a StaleDataError,
which run_with_retry answers by re-reading and trying again.

INVARIANT: customer.loyalty_points == points_balance_after of the latest
ledger row. reconcile_balance() reports whether that still holds.
"""

from __future__ import annotations

from typing import Any

from ..extensions import db
from ..models import Customer, LoyaltyTransaction
from ..time_utils import utcnow
from ..validation import ValidationError, require_positive_int
from .concurrency import lock_for_update, run_with_retry
from .tenant_service import Scope, scoped_query

DEFAULT_HISTORY_LIMIT = 20


class LoyaltyError(Exception):
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def _parse_amount(amount: Any) -> int:
    try:
        return require_positive_int(amount, "points")
    except ValidationError as exc:
        raise LoyaltyError("Please enter a valid number of points", {"points": amount}) from exc


def _parse_reason(reason: Any) -> str:
    text = reason.strip() if isinstance(reason, str) else ""
    if not text:
        raise LoyaltyError("A reason is required")
    if len(text) > 255:
        raise LoyaltyError("Reason exceeds max length 255")
    return text


def _apply(
    customer_id: int,
    scope: Scope,
    *,
    transaction_type: str,
    points: int,
    reason: str,
    expected_balance: int | None,
    sale_id: int | None = None,
) -> tuple[Customer, LoyaltyTransaction]:
    def _op():
        customer = lock_for_update(
            scoped_query(Customer, scope).filter(Customer.id == customer_id)
        ).first()
        if customer is None:
            raise LoyaltyError("Customer not found", {"customer_id": customer_id})

        before = customer.loyalty_points or 0

        if expected_balance is not None and expected_balance != before:
            raise LoyaltyError(
                "Points balance has changed, please refresh",
                {"expected_balance": expected_balance, "current_balance": before},
            )

        if transaction_type == "redeemed":
            if points > before:
                raise LoyaltyError(
                    "Cannot redeem more points than available",
                    {"requested": points, "available": before},
                )
            after = before - points
        else:
            after = before + points

        entry = LoyaltyTransaction(
            tenant_id=customer.tenant_id,
            branch_id=customer.branch_id,
            customer_id=customer.id,
            transaction_type=transaction_type,
            points_amount=points,
            points_balance_before=before,
            points_balance_after=after,
            description=reason,
            sale_id=sale_id,
            created_by=scope.user_id,
            created_at=utcnow(),
        )
        customer.loyalty_points = after

        db.session.add(entry)
        db.session.commit()
        return customer, entry

    return run_with_retry(_op)


def add_points(
    customer_id: int,
    amount: Any,
    reason: Any,
    scope: Scope,
    *,
    expected_balance: int | None = None,
) -> tuple[Customer, LoyaltyTransaction]:
    """Manual addition by staff, recorded as an 'adjusted' ledger row."""
    return _apply(
        customer_id,
        scope,
        transaction_type="adjusted",
        points=_parse_amount(amount),
        reason=_parse_reason(reason),
        expected_balance=expected_balance,
    )


def redeem_points(
    customer_id: int,
    amount: Any,
    reason: Any,
    scope: Scope,
    *,
    expected_balance: int | None = None,
) -> tuple[Customer, LoyaltyTransaction]:
    """Spend points; rejected when the amount exceeds the current balance."""
    return _apply(
        customer_id,
        scope,
        transaction_type="redeemed",
        points=_parse_amount(amount),
        reason=_parse_reason(reason),
        expected_balance=expected_balance,
    )


def list_transactions(customer_id: int, scope: Scope, limit: int = DEFAULT_HISTORY_LIMIT) -> list[LoyaltyTransaction]:
    return (
        scoped_query(LoyaltyTransaction, scope)
        .filter(LoyaltyTransaction.customer_id == customer_id)
        .order_by(LoyaltyTransaction.created_at.desc(), LoyaltyTransaction.id.desc())
        .limit(limit)
        .all()
    )


def reconcile_balance(customer_id: int, scope: Scope) -> dict:
    """
    Compare the denormalized balance with the ledger.

    A customer with no ledger rows is in sync only at a zero balance.
    """
    customer = scoped_query(Customer, scope).filter(Customer.id == customer_id).first()
    if customer is None:
        raise LoyaltyError("Customer not found", {"customer_id": customer_id})

    ledger = scoped_query(LoyaltyTransaction, scope).filter(
        LoyaltyTransaction.customer_id == customer.id
    )
    latest = ledger.order_by(
        LoyaltyTransaction.created_at.desc(), LoyaltyTransaction.id.desc()
    ).first()
    ledger_balance = latest.points_balance_after if latest else 0

    return {
        "customer_id": customer.id,
        "balance": customer.loyalty_points,
        "ledger_balance": ledger_balance,
        "transaction_count": ledger.count(),
        "in_sync": customer.loyalty_points == ledger_balance,
    }
