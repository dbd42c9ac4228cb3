from __future__ import annotations

from sqlalchemy import Float, Index, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


class DatasetEntry(Base):
    """One cached payload per dataset key; writes replace the whole row."""

    __tablename__ = "dataset_entries"
    __table_args__ = (Index("ix_dataset_entries_timestamp", "timestamp"),)

    key: Mapped[str] = mapped_column(String(120), primary_key=True)
    dataset_type: Mapped[str] = mapped_column(String(120), nullable=False)
    timestamp: Mapped[float] = mapped_column(Float, nullable=False)
    payload: Mapped[str] = mapped_column(Text, nullable=False)

    def __repr__(self) -> str:
        return f"<DatasetEntry {self.key} @{self.timestamp:.0f}>"


class CacheMetadata(Base):
    __tablename__ = "metadata"

    key: Mapped[str] = mapped_column(String(120), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)


__all__ = ["Base", "CacheMetadata", "DatasetEntry"]
