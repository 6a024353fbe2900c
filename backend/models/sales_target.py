"""
SalesTarget model - a salesman's goal over a date window.

Revenue targets accumulate ``current_progress`` from approved sales
submissions.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import DateTime, ForeignKey, Index, Numeric, String
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from models.database import Base


class SalesTarget(Base):
    """Sales target for a salesman."""

    __tablename__ = "sales_targets"
    __table_args__ = (
        Index("idx_sales_targets_salesman_window", "salesman_id", "start_date", "end_date"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    salesman_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    target_name: Mapped[str] = mapped_column(String(255), nullable=False)
    target_type: Mapped[str] = mapped_column(
        String(20), nullable=False, default="Revenue"
    )  # 'Revenue', 'Orders'
    target_value: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=0)
    period: Mapped[Optional[str]] = mapped_column(
        String(20), nullable=True
    )  # 'Daily', 'Weekly', 'Monthly', 'Quarterly', 'Yearly'
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    current_progress: Mapped[Decimal] = mapped_column(Numeric(15, 2), nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="Active"
    )  # 'Active', 'Completed', 'Failed', 'Cancelled'
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
