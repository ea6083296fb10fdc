"""
אימות webhook נכנס מה-WMS.

ה-WMS שולח את הכותרת ``X-Webhook-Secret`` עם כל בקשה כאשר הוגדר
סוד משותף. ה-dependency מוודא שהכותרת תואמת ל-``WMS_WEBHOOK_SECRET``.
"""
import hmac

from fastapi import Header, HTTPException, status

from wms_sync.core.config import settings
from wms_sync.core.logging import get_logger

logger = get_logger(__name__)


async def verify_wms_webhook_secret(
    x_webhook_secret: str | None = Header(None),
) -> None:
    """
    - no ``WMS_WEBHOOK_SECRET`` configured: skipped
    - header missing or different: 403
    """
    expected = settings.WMS_WEBHOOK_SECRET
    if not expected:
        return

    if not x_webhook_secret:
        logger.warning("WMS webhook without X-Webhook-Secret header")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Missing webhook secret",
        )

    # השוואה בטוחה מפני timing attacks
    if not hmac.compare_digest(x_webhook_secret, expected):
        logger.warning("WMS webhook with wrong secret")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid webhook secret",
        )
