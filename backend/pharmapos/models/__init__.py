from .tenancy import Tenant, Branch
from .auth import User, SessionToken, ROLES, SUBSCRIPTION_STATUSES
from .security import SecurityEvent
from .inventory import Category, Supplier, Product
from .customers import Customer, LoyaltyTransaction, LOYALTY_TRANSACTION_TYPES
from .sales import (
    Sale, SaleItem, Refund,
    SALE_STATUSES, PAYMENT_STATUSES, PAYMENT_METHODS, REFUND_METHODS, REFUND_STATUSES,
)
from .purchasing import PurchaseOrder, PurchaseOrderItem, PURCHASE_ORDER_STATUSES, PURCHASE_PAYMENT_STATUSES
from .audits import StockAudit, StockAuditItem, STOCK_AUDIT_STATUSES
from .settings import BranchSetting

__all__ = [
    'Tenant', 'Branch',
    'User', 'SessionToken', 'ROLES', 'SUBSCRIPTION_STATUSES',
    'SecurityEvent',
    'Category', 'Supplier', 'Product',
    'Customer', 'LoyaltyTransaction', 'LOYALTY_TRANSACTION_TYPES',
    'Sale', 'SaleItem', 'Refund',
    'SALE_STATUSES', 'PAYMENT_STATUSES', 'PAYMENT_METHODS', 'REFUND_METHODS', 'REFUND_STATUSES',
    'PurchaseOrder', 'PurchaseOrderItem', 'PURCHASE_ORDER_STATUSES', 'PURCHASE_PAYMENT_STATUSES',
    'StockAudit', 'StockAuditItem', 'STOCK_AUDIT_STATUSES',
    'BranchSetting',
]
