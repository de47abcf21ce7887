from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text, Index
from sqlalchemy.orm import relationship
from core.clock import utcnow
from models.base import Base, JSONType


class Source(Base):
    """
    A storefront the user exports from.

    ``credentials`` holds what the source client needs to authenticate
    (shop name, access token); the source client owns its own auth.
    """
    __tablename__ = "sources"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    api_type = Column(String(50), nullable=False, default="Shopify")
    credentials = Column(JSONType, nullable=False, default=dict)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    selected_apis = relationship(
        "SourceSelectedApi", back_populates="source", lazy="selectin"
    )


class SourceApi(Base):
    """Catalogue of source API endpoints (orders, products, customers...)."""
    __tablename__ = "source_apis"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(100), nullable=False, unique=True)
    endpoint = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)


class SourceSelectedApi(Base):
    """Which APIs (and which of their fields) a source exports."""
    __tablename__ = "source_selected_apis"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(Integer, ForeignKey("sources.id"), nullable=False)
    api_id = Column(Integer, ForeignKey("source_apis.id"), nullable=False)
    selected_fields = Column(JSONType, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)

    source = relationship("Source", back_populates="selected_apis")
    api = relationship("SourceApi", lazy="joined")

    __table_args__ = (
        Index("idx_selected_apis_source", "source_id"),
    )


class Transformation(Base):
    """
    Ordered list of field-level operations applied to extracted data.

    configuration example:
        [{"api": "orders", "field": "total_price", "type": "CAST",
          "configuration": {"targetType": "FLOAT"}}]
    """
    __tablename__ = "transformations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_id = Column(Integer, ForeignKey("sources.id"), nullable=False)
    name = Column(String(255), nullable=False)
    configuration = Column(JSONType, nullable=False, default=list)
    is_active = Column(Boolean, default=True, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
