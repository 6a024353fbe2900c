"""Services package."""
from services.approvals import ApprovalWorkflow
from services.reconciliation import ReconciliationEngine
from services.record_store import RecordStore, SqlRecordStore

__all__ = ["ApprovalWorkflow", "ReconciliationEngine", "RecordStore", "SqlRecordStore"]
