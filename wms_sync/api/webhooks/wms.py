"""
WMS Webhook Intake

Accepts a webhook notification, queues it (idempotent on the webhook id) and
processes a small batch of the queue inline so most events are applied
before the response returns. The Celery beat task drains whatever is left.
"""
import hashlib
import json
from typing import Any

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, ConfigDict, Field, model_validator
from sqlalchemy.ext.asyncio import AsyncSession

from wms_sync.api.dependencies.webhook_auth import verify_wms_webhook_secret
from wms_sync.core.config import settings
from wms_sync.core.exceptions import ValidationException
from wms_sync.core.logging import get_logger
from wms_sync.db.database import get_db
from wms_sync.domain.services.webhook_queue_service import WebhookQueueService

logger = get_logger(__name__)

router = APIRouter()


class WmsWebhookPayload(BaseModel):
    """
    Either the normalized contract
    ``{dedup_id, group, action, entity_id, external_reference, payload}``
    or the raw WMS shape ``{group, action, entityId, body}``.
    """

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    dedup_id: str | None = None
    group: str = Field(min_length=1)
    action: str = Field(min_length=1)
    entity_id: str | None = Field(default=None, alias="entityId")
    external_reference: str | None = None
    payload: dict[str, Any] | None = Field(default=None, alias="body")

    @model_validator(mode="before")
    @classmethod
    def coerce_identifiers(cls, data: Any) -> Any:
        # ה-WMS שולח מזהים מספריים לפעמים
        if isinstance(data, dict):
            data = dict(data)
            for key in ("entity_id", "entityId", "dedup_id", "external_reference"):
                if data.get(key) is not None and not isinstance(data[key], str):
                    data[key] = str(data[key])
            if data.get("payload") is None and isinstance(data.get("body"), dict):
                data["payload"] = data.pop("body")
        return data

    def body(self) -> dict[str, Any]:
        """The event document; falls back to the extra top-level fields"""
        if self.payload is not None:
            return self.payload
        return dict(self.model_extra or {})

    def resolved_external_reference(self) -> str | None:
        if self.external_reference:
            return self.external_reference
        reference = self.body().get("external_reference")
        return str(reference) if reference not in (None, "") else None


def _fallback_webhook_id(event: WmsWebhookPayload) -> str:
    """Stable id for deliveries without X-Webhook-Id / dedup_id"""
    raw = json.dumps(
        [event.group, event.action, event.entity_id, event.body()],
        sort_keys=True,
        default=str,
    )
    return f"wms:{hashlib.sha1(raw.encode('utf-8')).hexdigest()}"


@router.post(
    "",
    summary="Webhook - WMS (order / stock / shipment / inbound / article events)",
    description=(
        "נקודת כניסה ל-webhooks של ה-WMS. האירוע נשמר בתור (idempotent לפי webhook id) "
        "ומעובדת מנה קטנה מהתור מיד."
    ),
    dependencies=[Depends(verify_wms_webhook_secret)],
)
async def wms_webhook(
    event: WmsWebhookPayload,
    x_webhook_id: str | None = Header(None),
    db: AsyncSession = Depends(get_db),
) -> dict:
    webhook_id = event.dedup_id or x_webhook_id or _fallback_webhook_id(event)
    if len(webhook_id) > 200:
        raise ValidationException("Webhook id is too long", field="dedup_id")

    queue = WebhookQueueService(db)
    job, created = await queue.enqueue(
        webhook_id=webhook_id,
        group=event.group,
        action=event.action,
        payload=event.body(),
        entity_id=event.entity_id,
        external_reference=event.resolved_external_reference(),
    )

    response: dict[str, Any] = {
        "ok": True,
        "webhook_id": webhook_id,
        "job_id": job.id,
        "queued": created,
    }
    if not created:
        response["duplicate"] = True
        return response

    # כשל בעיבוד המיידי לא מפיל את הבקשה - האירוע כבר שמור בתור
    try:
        response["processing"] = await queue.process_queued_webhooks(settings.WEBHOOK_INLINE_BATCH_SIZE)
    except Exception as e:
        await db.rollback()
        logger.error(
            "Inline webhook processing failed, left for the scheduled run",
            extra_data={"webhook_id": webhook_id, "error": str(e)},
            exc_info=True,
        )
        response["processing"] = {"error": "deferred"}
    return response
