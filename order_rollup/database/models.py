"""
Database Models

Generic document table backing the SQL document store. Each row is one
JSON document addressed by (collection, document_id), with a version
counter used for optimistic concurrency control.
"""

from datetime import datetime
from typing import Any, Dict

from sqlalchemy import JSON, DateTime, Index, Integer, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


class DocumentRecord(Base):
    """
    Document Table
    
    Stores event rollups and the event records read for club lookups.
    """
    __tablename__ = "documents"
    
    collection: Mapped[str] = mapped_column(String(100), primary_key=True)
    document_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    data: Mapped[Dict[str, Any]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    
    __table_args__ = (
        Index("ix_documents_collection_updated", "collection", "updated_at"),
    )
