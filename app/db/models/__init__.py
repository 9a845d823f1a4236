"""
Database Models
"""
from app.db.models.sync_job import SyncJob
from app.db.models.sync_event import SyncEvent
from app.db.models.webhook_record import WebhookRecord
from app.db.models.erp_token import ErpToken
from app.db.models.price_history import PriceHistory
from app.db.models.price_conflict import PriceConflict
from app.db.models.tenant_connection import TenantConnection
from app.db.models.product import Product
from app.db.models.price_policy import PricePolicy
from app.db.models.product_sync_mapping import ProductSyncMapping
from app.db.models.order_sync_mapping import OrderSyncMapping

__all__ = [
    "SyncJob",
    "SyncEvent",
    "WebhookRecord",
    "ErpToken",
    "PriceHistory",
    "PriceConflict",
    "TenantConnection",
    "Product",
    "PricePolicy",
    "ProductSyncMapping",
    "OrderSyncMapping",
]
