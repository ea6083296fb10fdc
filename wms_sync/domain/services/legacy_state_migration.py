"""
Legacy sync-flag migration.

Older installs tracked the sync state of an order with loose metadata flags.
adopt_legacy_state() translates those flags into an OrderStateRecord when a
record is loaded for the first time, and migrate_legacy_flags() runs the same
translation once for every order at start-up. Both drop the obsolete flags.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from wms_sync.core.clock import utcnow
from wms_sync.core.logging import get_logger
from wms_sync.db.models.order import Order
from wms_sync.db.models.order_state import OrderStateRecord, OrderSyncState, ProcessingSource

logger = get_logger(__name__)

FLAG_SYNCED_FROM_REMOTE = "_wms_synced_from_wms"
FLAG_SKIP_EXPORT = "_wms_skip_export_hooks"
FLAG_WEBHOOK_PROCESSED = "_wms_webhook_processed"
FLAG_WEBHOOK_PROCESSED_AT = "_wms_webhook_processed_at"
FLAG_REMOTE_ORDER_ID = "_wms_order_id"

# removed once translated; _wms_order_id stays, other code still reads it
OBSOLETE_FLAGS = (
    FLAG_SYNCED_FROM_REMOTE,
    FLAG_SKIP_EXPORT,
    FLAG_WEBHOOK_PROCESSED,
    FLAG_WEBHOOK_PROCESSED_AT,
    "_wms_sync_date",
    "_wms_sync_source",
)


@dataclass(frozen=True)
class LegacyState:
    state: OrderSyncState
    remote_order_id: str | None
    processing_source: str | None
    last_processed_at: datetime | None


def _truthy(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "yes", "true")
    return bool(value)


def _parse_timestamp(value) -> datetime | None:
    if value in (None, ""):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc).replace(tzinfo=None)
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError:
        return None
    return parsed.replace(tzinfo=None)


def has_legacy_flags(meta: dict | None) -> bool:
    return bool(meta) and any(key in meta for key in (*OBSOLETE_FLAGS, FLAG_REMOTE_ORDER_ID))


def read_legacy_state(meta: dict | None) -> LegacyState:
    """
    Map legacy flags to a state. The first matching flag wins:
    synced-from-remote, skip-export, webhook-processed, remote id, else pending.
    """
    meta = meta or {}
    remote_id = meta.get(FLAG_REMOTE_ORDER_ID)
    remote_id = str(remote_id) if remote_id not in (None, "") else None

    if _truthy(meta.get(FLAG_SYNCED_FROM_REMOTE)):
        return LegacyState(
            OrderSyncState.SYNCED_FROM_REMOTE,
            remote_id,
            ProcessingSource.REMOTE_SYNC.value,
            _parse_timestamp(meta.get("_wms_sync_date")),
        )
    if _truthy(meta.get(FLAG_SKIP_EXPORT)):
        return LegacyState(OrderSyncState.SKIPPED, remote_id, ProcessingSource.MANUAL.value, None)
    if _truthy(meta.get(FLAG_WEBHOOK_PROCESSED)):
        return LegacyState(
            OrderSyncState.WEBHOOK_PROCESSED,
            remote_id,
            ProcessingSource.WEBHOOK.value,
            _parse_timestamp(meta.get(FLAG_WEBHOOK_PROCESSED_AT)),
        )
    if remote_id:
        return LegacyState(OrderSyncState.EXPORTED, remote_id, ProcessingSource.EXPORT.value, None)
    return LegacyState(OrderSyncState.PENDING, None, None, None)


def adopt_legacy_state(order: Order) -> OrderStateRecord:
    """Build the state record for an order that has none, consuming its legacy flags"""
    legacy = read_legacy_state(order.meta)
    now = utcnow()
    record = OrderStateRecord(
        order_id=order.id,
        state=legacy.state.value,
        remote_order_id=legacy.remote_order_id,
        processing_source=legacy.processing_source,
        last_processed_at=legacy.last_processed_at,
        meta={},
        created_at=now,
        updated_at=now,
    )
    if order.meta:
        removed = [key for key in OBSOLETE_FLAGS if key in order.meta]
        for key in removed:
            del order.meta[key]
        if removed:
            record.meta["migrated_flags"] = removed
    return record


async def migrate_legacy_flags(db: AsyncSession, batch_size: int = 500) -> dict:
    """
    Create state records for every order that lacks one.

    Returns:
        {"scanned": int, "migrated": int} - migrated counts orders that
        carried legacy flags
    """
    scanned = 0
    migrated = 0
    last_id = 0

    while True:
        result = await db.execute(
            select(Order)
            .outerjoin(OrderStateRecord, OrderStateRecord.order_id == Order.id)
            .where(OrderStateRecord.order_id.is_(None), Order.id > last_id)
            .order_by(Order.id)
            .limit(batch_size)
        )
        orders = list(result.scalars().all())
        if not orders:
            break

        for order in orders:
            scanned += 1
            if has_legacy_flags(order.meta):
                migrated += 1
            db.add(adopt_legacy_state(order))
            last_id = order.id
        await db.commit()

    if scanned:
        logger.info(
            "Legacy order sync flags migrated",
            extra_data={"scanned": scanned, "migrated": migrated},
        )
    return {"scanned": scanned, "migrated": migrated}
