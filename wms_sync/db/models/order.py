"""
Order Models - local order aggregate (order, lines, notes).

external_reference is the identifier shared with the WMS and the only key
used to correlate a remote order with a local one.
"""
import enum

from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
)
from sqlalchemy.ext.mutable import MutableDict
from sqlalchemy.orm import relationship

from wms_sync.core.clock import utcnow
from wms_sync.db.database import Base


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    ON_HOLD = "on-hold"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


class Order(Base):
    """Local order aggregate"""

    __tablename__ = "orders"

    id = Column(Integer, primary_key=True, index=True)
    external_reference = Column(String(100), unique=True, nullable=True, index=True)

    status = Column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    currency = Column(String(3), nullable=False, default="EUR")
    total = Column(Numeric(12, 2), nullable=False, default=0)
    customer_note = Column(Text, nullable=True)

    # {"first_name", "last_name", "company", "street", "street2", "house_number",
    #  "city", "state", "postcode", "country", "phone", "email"}
    billing_address = Column(MutableDict.as_mutable(JSON), nullable=False, default=dict)
    shipping_address = Column(MutableDict.as_mutable(JSON), nullable=False, default=dict)

    shipping_method_key = Column(String(100), nullable=True)  # "method_id:instance_id"
    requested_delivery_date = Column(Date, nullable=True)

    # free-form key/value metadata (remote ids, raw payloads, tracking, legacy flags)
    meta = Column("meta_data", MutableDict.as_mutable(JSON), nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    lines = relationship(
        "OrderLine",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderLine.id",
    )
    notes = relationship(
        "OrderNote",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="OrderNote.id",
    )


class OrderLine(Base):
    """Order line item"""

    __tablename__ = "order_lines"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(Integer, ForeignKey("products.id"), nullable=True)

    sku = Column(String(100), nullable=True, index=True)
    name = Column(String(255), nullable=False, default="")
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(12, 2), nullable=False, default=0)
    total = Column(Numeric(12, 2), nullable=False, default=0)

    order = relationship("Order", back_populates="lines")
    product = relationship("Product", lazy="selectin")


class OrderNote(Base):
    """Audit note attached to an order"""

    __tablename__ = "order_notes"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    note = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    order = relationship("Order", back_populates="notes")
