"""
Columns shared by every entity that is reconciled with the CRM.

``external_id`` is unique but sparse: each table declares a partial unique
index on it (``WHERE external_id IS NOT NULL``) so rows that were never
pushed do not collide.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Index, String, Text, text
from sqlalchemy.orm import Mapped, mapped_column


class SyncableMixin:
    """ExternalRef + provenance columns."""

    external_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    last_synced_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_sync_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    # 'app' | 'external'; NULL means never claimed
    provenance: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)


def external_id_index(table_name: str) -> Index:
    """Partial unique index on external_id for ``table_name``."""
    return Index(
        f"uq_{table_name}_external_id",
        "external_id",
        unique=True,
        postgresql_where=text("external_id IS NOT NULL"),
    )
