"""
API Routes
"""
from fastapi import APIRouter, Depends

from app.api.dependencies.admin_auth import require_admin_api_key
from app.api.routes.admin import router as admin_router
from app.api.routes.events import router as events_router
from app.api.routes.jobs import router as jobs_router
from app.api.routes.prices import router as prices_router
from app.api.webhooks.bling import router as bling_webhook_router

router = APIRouter()

# webhooks מאומתים בחתימת HMAC, לא במפתח admin
router.include_router(bling_webhook_router, prefix="/webhooks/bling", tags=["Webhooks"])

_admin = [Depends(require_admin_api_key)]
router.include_router(jobs_router, prefix="/jobs", tags=["Jobs"], dependencies=_admin)
router.include_router(events_router, prefix="/events", tags=["Events"], dependencies=_admin)
router.include_router(prices_router, prefix="/prices", tags=["Prices"], dependencies=_admin)
router.include_router(admin_router, prefix="/admin", tags=["Admin"], dependencies=_admin)
