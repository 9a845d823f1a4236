"""
Sync Runtime - הרכבה של כל הרכיבים בתהליך אחד.

נבנה ב-startup של FastAPI ונגיש ל-routes דרך get_runtime().
סדר עליה: bus (recovery) → orchestrator (recovery) → webhooks → טוקנים → מחירים.
סדר ירידה הפוך, כך ש-jobs שנעצרים עדיין יכולים לפרסם job.failed.
"""
from typing import Any

import httpx

from app.core.config import settings
from app.core.logging import get_logger
from app.db.database import AsyncSessionLocal, SessionFactory
from app.domain.services.bling_client import BlingApiClient, BlingOAuthClient
from app.domain.services.event_bus import EventBus
from app.domain.services.event_handlers import register_default_handlers
from app.domain.services.job_handlers import SyncJobHandlers
from app.domain.services.job_orchestrator import JobOrchestrator
from app.domain.services.price_sync_service import PriceSyncEngine
from app.domain.services.sync_service import CatalogSyncService
from app.domain.services.token_coordinator import TokenRefreshCoordinator
from app.domain.services.webhook_processor import WebhookProcessor

logger = get_logger(__name__)

_runtime: "SyncRuntime | None" = None


class SyncRuntime:
    def __init__(
        self,
        session_factory: SessionFactory = AsyncSessionLocal,
        *,
        http_client: httpx.AsyncClient | None = None,
        api_client: Any = None,
    ) -> None:
        self.session_factory = session_factory
        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.BLING_REQUEST_TIMEOUT_SECONDS)

        self.oauth_client = BlingOAuthClient(self.http_client)
        self.tokens = TokenRefreshCoordinator(session_factory, self.oauth_client)
        self.api_client = api_client or BlingApiClient(self.tokens, self.http_client)

        self.event_bus = EventBus(session_factory)
        self.orchestrator = JobOrchestrator(session_factory, event_bus=self.event_bus)
        self.price_engine = PriceSyncEngine(session_factory, self.api_client, self.event_bus)
        self.catalog = CatalogSyncService(
            session_factory, self.api_client, self.price_engine, self.event_bus
        )
        self.webhooks = WebhookProcessor(session_factory, self.catalog, self.event_bus)

        self.job_handlers = SyncJobHandlers(
            session_factory,
            catalog=self.catalog,
            price_engine=self.price_engine,
            webhook_processor=self.webhooks,
            token_coordinator=self.tokens,
            event_bus=self.event_bus,
            orchestrator=self.orchestrator,
        )
        self.job_handlers.register()
        self.event_handlers = register_default_handlers(self)
        self.started = False

    async def start(self) -> dict[str, int]:
        if self.started:
            return {"events_recovered": 0, "jobs_recovered": 0}
        events_recovered = await self.event_bus.start()
        jobs_recovered = await self.orchestrator.start()
        self.webhooks.start()
        self.tokens.start()
        self.price_engine.start()
        self.started = True
        logger.info(
            "Sync runtime started",
            extra_data={"events_recovered": events_recovered, "jobs_recovered": jobs_recovered},
        )
        return {"events_recovered": events_recovered, "jobs_recovered": jobs_recovered}

    async def stop(self) -> None:
        if self.started:
            await self.price_engine.stop()
            await self.tokens.stop()
            await self.webhooks.stop()
            await self.orchestrator.stop()
            await self.event_bus.stop()
            self.started = False
        if self._owns_http_client:
            await self.http_client.aclose()
        logger.info("Sync runtime stopped")

    def get_statistics(self) -> dict[str, Any]:
        return {
            "jobs": self.orchestrator.get_statistics(),
            "events": self.event_bus.get_statistics(),
            "tokens": self.tokens.get_stats(),
            "bling_client": self.api_client.get_stats(),
            "prices": self.price_engine.get_statistics(),
            "webhooks": self.webhooks.get_stats(),
        }


def get_runtime() -> SyncRuntime:
    """ה-runtime הפעיל; נבנה בעצלות אם ה-startup לא בנה אותו (בדיקות)"""
    global _runtime
    if _runtime is None:
        _runtime = SyncRuntime()
    return _runtime


def set_runtime(runtime: SyncRuntime | None) -> None:
    global _runtime
    _runtime = runtime
