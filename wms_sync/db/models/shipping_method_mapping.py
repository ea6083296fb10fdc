"""
Shipping Method Mapping - local checkout method -> WMS shipping method id.
"""
from sqlalchemy import Column, DateTime, Integer, String

from wms_sync.core.clock import utcnow
from wms_sync.db.database import Base


class ShippingMethodMapping(Base):
    __tablename__ = "shipping_method_mappings"

    id = Column(Integer, primary_key=True, index=True)
    local_method_key = Column(String(100), unique=True, nullable=False)  # "method_id:instance_id"
    wms_shipping_method_id = Column(String(100), nullable=False)
    description = Column(String(255), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
