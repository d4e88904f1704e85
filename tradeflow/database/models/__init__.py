"""
Database models package.

Importing this package registers every model with ``Base.metadata`` for
Alembic and relationship resolution.
"""

from tradeflow.database.base import AuditedModel, Base, BaseModel
from tradeflow.database.models.notification import NotificationLog, NotificationStatus
from tradeflow.database.models.order import Order, OrderEvent, OrderLineItem
from tradeflow.database.models.payment import PaymentRecord, PaymentType
from tradeflow.database.models.product import Product

__all__ = [
    "AuditedModel",
    "Base",
    "BaseModel",
    "NotificationLog",
    "NotificationStatus",
    "Order",
    "OrderEvent",
    "OrderLineItem",
    "PaymentRecord",
    "PaymentType",
    "Product",
]
