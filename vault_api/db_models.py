"""
Persisted Tables
================

- records: one row per model name with the artifact location and the
  packed auxiliary blob
- metadata_index: the summary columns listed and aggregated by the API

Timestamps are epoch milliseconds.
"""

from typing import Optional

from sqlalchemy import BigInteger, Float, JSON, LargeBinary, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class RecordRow(Base):
    __tablename__ = "records"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    version: Mapped[str] = mapped_column(String(32))
    artifact_key: Mapped[str] = mapped_column(String(512))
    content_hash: Mapped[str] = mapped_column(String(64))
    backend_type: Mapped[str] = mapped_column(String(16))
    compression: Mapped[dict] = mapped_column(JSON)
    aux_blob: Mapped[bytes] = mapped_column(LargeBinary)
    aux_encoding: Mapped[str] = mapped_column(String(8), default="gzip")
    extra: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger)
    updated_at: Mapped[int] = mapped_column(BigInteger)
    last_used_at: Mapped[int] = mapped_column(BigInteger, index=True)


class MetadataRow(Base):
    __tablename__ = "metadata_index"

    name: Mapped[str] = mapped_column(String(255), primary_key=True)
    version: Mapped[str] = mapped_column(String(32))
    size: Mapped[int] = mapped_column(BigInteger)
    original_size: Mapped[int] = mapped_column(BigInteger)
    ratio: Mapped[float] = mapped_column(Float)
    method: Mapped[str] = mapped_column(String(64))
    level: Mapped[str] = mapped_column(String(16))
    savings: Mapped[int] = mapped_column(BigInteger)
    performance: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger)
    updated_at: Mapped[int] = mapped_column(BigInteger)
    last_used_at: Mapped[int] = mapped_column(BigInteger, index=True)
