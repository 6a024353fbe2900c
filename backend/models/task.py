"""
Task model - follow-up activities owned by a field salesman.

Rows are created locally (provenance 'app') or imported from HubSpot tasks
(provenance 'external'). ``status`` is derived from ``due_date`` on every
save unless the task is completed.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime, ForeignKey, Index, String, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from config import to_iso8601
from models.database import Base
from models.syncable import SyncableMixin, external_id_index


class Task(SyncableMixin, Base):
    """Follow-up task, optionally mirrored to a HubSpot task object."""

    __tablename__ = "tasks"
    __table_args__ = (
        external_id_index("tasks"),
        Index("idx_tasks_owner", "owner_id"),
        Index("idx_tasks_approval_status", "approval_status"),
        Index("idx_tasks_visit_target_type", "visit_target_id", "type"),
        # At most one companion Visit task per visit target
        Index(
            "uq_tasks_visit_target_visit",
            "visit_target_id",
            unique=True,
            postgresql_where=text("type = 'Visit' AND visit_target_id IS NOT NULL"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    type: Mapped[str] = mapped_column(
        String(30), nullable=False, default="Call"
    )  # 'Call', 'Visit', 'Email', 'QuoteFollowUp', 'SampleFeedback', 'OrderCheck'
    priority: Mapped[str] = mapped_column(
        String(20), nullable=False, default="Medium"
    )  # 'Low', 'Medium', 'High', 'Urgent'
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="Upcoming"
    )  # 'Overdue', 'Today', 'Upcoming', 'Completed'
    approval_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default="Pending"
    )  # 'Pending', 'Approved', 'Rejected'

    subject: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    due_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    owner_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=False
    )
    customer_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("customers.id"), nullable=True
    )
    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    visit_target_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("visit_targets.id"), nullable=True
    )

    # HubSpot-side owner / association snapshot
    external_owner_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    external_owner_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_owner_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_contact_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    external_contact_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_contact_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_company_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    external_company_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_company_domain: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_status: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)

    # Approval workflow
    approved_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=True
    )
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=True
    )
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_by: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("users.id"), nullable=True
    )
    created_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for API responses."""
        return {
            "id": str(self.id),
            "type": self.type,
            "priority": self.priority,
            "status": self.status,
            "approval_status": self.approval_status,
            "subject": self.subject,
            "description": self.description,
            "due_date": to_iso8601(self.due_date),
            "owner_id": str(self.owner_id),
            "customer_name": self.customer_name,
            "provenance": self.provenance,
            "external_id": self.external_id,
            "last_synced_at": to_iso8601(self.last_synced_at),
            "last_sync_error": self.last_sync_error,
        }
