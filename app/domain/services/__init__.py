"""
Domain Services
"""
from app.domain.services.token_coordinator import TokenRefreshCoordinator
from app.domain.services.bling_client import BlingApiClient
from app.domain.services.event_bus import EventBus
from app.domain.services.job_orchestrator import JobOrchestrator
from app.domain.services.webhook_processor import WebhookProcessor
from app.domain.services.price_sync_service import PriceSyncEngine
from app.domain.services.sync_service import CatalogSyncService

__all__ = [
    "TokenRefreshCoordinator",
    "BlingApiClient",
    "EventBus",
    "JobOrchestrator",
    "WebhookProcessor",
    "PriceSyncEngine",
    "CatalogSyncService",
]
