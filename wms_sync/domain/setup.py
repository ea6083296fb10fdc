"""
Process start-up wiring shared by the API and the Celery worker.
"""
from wms_sync.core.logging import get_logger
from wms_sync.domain.event_tables import validate_event_tables
from wms_sync.domain.events import get_event_bus
from wms_sync.domain.services.export_listener import register_export_listener

logger = get_logger(__name__)


def configure_sync_engine() -> None:
    """Validate the event tables and subscribe the outbound export listener"""
    validate_event_tables()
    register_export_listener(get_event_bus())
    logger.info("Sync engine configured")
