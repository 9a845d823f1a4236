"""
Bling Webhook Handler

החתימה מחושבת על ה-body הגולמי, לכן ה-route קורא את הבייטים בעצמו
ולא נותן ל-FastAPI לפענח JSON.
"""
from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse

from app.core.exceptions import (
    AppException,
    WebhookPayloadError,
    WebhookSignatureError,
    WebhookTimestampError,
)
from app.core.logging import get_correlation_id, get_logger
from app.domain.services.runtime import SyncRuntime, get_runtime

logger = get_logger(__name__)

router = APIRouter()


@router.post("")
async def bling_webhook(request: Request, runtime: SyncRuntime = Depends(get_runtime)):
    """
    200 processed / duplicate; 401 חתימה או זמן; 422 payload;
    500 כשלון ב-handler (הרשומה failed וה-sweep ינסה שוב).
    """
    raw_body = await request.body()
    try:
        result = await runtime.webhooks.process_webhook(raw_body, request.headers)
    except (WebhookSignatureError, WebhookTimestampError, WebhookPayloadError):
        raise
    except Exception as e:
        error = e.message if isinstance(e, AppException) else type(e).__name__
        logger.error("Bling webhook processing failed", extra_data={"error": error}, exc_info=True)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"status": "failed", "error": error},
            headers={"X-Correlation-ID": get_correlation_id()},
        )
    return result.to_dict()
