"""
Product Model - minimal local catalogue needed to resolve order lines.
"""
from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, Numeric, String
from sqlalchemy.ext.mutable import MutableDict

from wms_sync.core.clock import utcnow
from wms_sync.db.database import Base


class Product(Base):
    """Sellable product, optionally linked to a WMS article / variant"""

    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    sku = Column(String(100), unique=True, nullable=True, index=True)
    name = Column(String(255), nullable=False)
    price = Column(Numeric(12, 2), nullable=False, default=0)

    wms_article_code = Column(String(100), nullable=True, index=True)
    wms_variant_id = Column(String(100), nullable=True, index=True)

    manage_stock = Column(Boolean, nullable=False, default=False)
    stock_quantity = Column(Integer, nullable=True)
    stock_status = Column(String(20), nullable=False, default="instock")

    # synthesized when neither the catalogue nor the WMS knew the article
    is_placeholder = Column(Boolean, nullable=False, default=False)

    meta = Column("meta_data", MutableDict.as_mutable(JSON), nullable=False, default=dict)

    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
