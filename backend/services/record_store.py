"""
Record store: the persistence boundary of the reconciliation engine.

Services work with the Pydantic records from ``connectors.models``; the store
maps them to SQLAlchemy rows.  ``SqlRecordStore`` is the production
implementation over async SQLAlchemy / PostgreSQL.  Uniqueness of
``external_id`` and customer ``email`` is enforced by partial unique indexes,
and ``upsert_by_key`` relies on ``INSERT ... ON CONFLICT DO UPDATE`` so that
concurrent passes cannot create duplicates.
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import datetime
from decimal import Decimal
from enum import StrEnum
from typing import Any, Optional

from sqlalchemy import and_, func, literal_column, or_, select, text, update as sa_update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.exc import IntegrityError

from connectors.models import (
    ActorRef,
    ApprovalStatus,
    CustomerRecord,
    SalesSubmissionRecord,
    SyncableRecord,
    SyncEntity,
    TaskRecord,
    VisitTargetRecord,
)
from models.database import get_session
from services.sync_errors import (
    ASSOCIATION_ERROR_REGEX,
    ConsistencyViolation,
    RecordNotFoundError,
)

logger = logging.getLogger(__name__)


class PushMode(StrEnum):
    DEFAULT = "default"
    ONLY_MISSING_EXTERNAL_REF = "only_missing_external_ref"
    ONLY_ASSOCIATION_ERROR = "only_association_error"


USER_MATCH_FIELDS: frozenset[str] = frozenset({"email", "name"})


class RecordStore(ABC):
    """Storage operations the engine and approval workflow depend on."""

    @abstractmethod
    async def find_one(self, entity: SyncEntity, **equals: Any) -> Optional[SyncableRecord]:
        pass

    @abstractmethod
    async def insert(self, entity: SyncEntity, record: SyncableRecord) -> SyncableRecord:
        """Insert a record; raises ConsistencyViolation on a duplicate key."""
        pass

    @abstractmethod
    async def update(
        self,
        entity: SyncEntity,
        record_id: uuid.UUID,
        patch: dict[str, Any],
    ) -> SyncableRecord:
        """Apply ``patch``; raises RecordNotFoundError or ConsistencyViolation."""
        pass

    @abstractmethod
    async def upsert_by_key(
        self,
        entity: SyncEntity,
        key: str,
        insert_record: SyncableRecord,
        update_patch: dict[str, Any],
    ) -> tuple[SyncableRecord, bool]:
        """Insert ``insert_record`` or, when ``key`` already exists, apply ``update_patch``.

        Returns the stored record and whether it was created.
        """
        pass

    @abstractmethod
    async def count_distinct(self, entity: SyncEntity, field: str, **equals: Any) -> int:
        pass

    @abstractmethod
    async def find_push_candidates(
        self,
        entity: SyncEntity,
        mode: PushMode,
        limit: int,
    ) -> list[SyncableRecord]:
        """Records eligible for an outbound push in ``mode``, oldest first."""
        pass

    @abstractmethod
    async def get_actor(self, actor_id: uuid.UUID) -> Optional[ActorRef]:
        pass

    @abstractmethod
    async def find_user_matching(self, field: str, pattern: str) -> Optional[ActorRef]:
        """First user whose ``field`` matches the case-insensitive regex ``pattern``."""
        pass

    @abstractmethod
    async def increment_revenue_targets(
        self,
        salesman_id: uuid.UUID,
        sales_date: datetime,
        amount: Decimal,
    ) -> int:
        """Atomically add ``amount`` to every Active Revenue target whose
        window contains ``sales_date``.  Returns the number of targets updated."""
        pass


# ---------------------------------------------------------------------------
# Entity -> table mapping
# ---------------------------------------------------------------------------

def _get_table_config(entity: SyncEntity) -> dict[str, Any]:
    """Return model class, record class and record-field -> column renames."""
    from models.customer import Customer
    from models.sales_submission import SalesSubmission
    from models.task import Task
    from models.visit_target import VisitTarget

    configs: dict[SyncEntity, dict[str, Any]] = {
        SyncEntity.TASK: {
            "model": Task,
            "record": TaskRecord,
            "columns": {"derived_status": "status"},
            "approvable": True,
        },
        SyncEntity.VISIT_TARGET: {
            "model": VisitTarget,
            "record": VisitTargetRecord,
            "columns": {},
            "approvable": True,
        },
        SyncEntity.CUSTOMER: {
            "model": Customer,
            "record": CustomerRecord,
            "columns": {},
            "approvable": False,
        },
        SyncEntity.SALES_SUBMISSION: {
            "model": SalesSubmission,
            "record": SalesSubmissionRecord,
            "columns": {},
            "approvable": True,
        },
    }
    return configs[SyncEntity(entity)]


def _column_name(config: dict[str, Any], field: str) -> str:
    return config["columns"].get(field, field)


def _record_to_row(config: dict[str, Any], record: SyncableRecord) -> dict[str, Any]:
    data = record.model_dump(mode="python")
    return {_column_name(config, field): value for field, value in data.items()}


def _mapping_to_record(config: dict[str, Any], mapping: Any) -> SyncableRecord:
    record_cls = config["record"]
    data = {
        field: mapping[_column_name(config, field)]
        for field in record_cls.model_fields
    }
    return record_cls.model_validate(data)


def _row_to_record(config: dict[str, Any], row: Any) -> SyncableRecord:
    record_cls = config["record"]
    data = {
        field: getattr(row, _column_name(config, field))
        for field in record_cls.model_fields
    }
    return record_cls.model_validate(data)


def _written_fields(record: SyncableRecord, patch: dict[str, Any]) -> list[str]:
    fields = list(patch)
    for field in (*type(record).derived_fields, "updated_at"):
        if field not in fields:
            fields.append(field)
    return fields


def _violation(entity: SyncEntity, exc: IntegrityError, record: SyncableRecord) -> ConsistencyViolation:
    detail = str(exc.orig)
    if "email" in detail:
        return ConsistencyViolation(str(entity), "email", getattr(record, "email", None))
    if "visit_target" in detail:
        return ConsistencyViolation(
            str(entity), "visit_target_id", getattr(record, "visit_target_id", None)
        )
    return ConsistencyViolation(str(entity), "external_id", record.external_id)


class SqlRecordStore(RecordStore):
    """RecordStore over async SQLAlchemy sessions."""

    def _where(self, config: dict[str, Any], equals: dict[str, Any]) -> list[Any]:
        model = config["model"]
        conditions: list[Any] = []
        for field, value in equals.items():
            column = getattr(model, _column_name(config, field))
            if value is None:
                conditions.append(column.is_(None))
            else:
                conditions.append(column == value)
        return conditions

    async def find_one(self, entity: SyncEntity, **equals: Any) -> Optional[SyncableRecord]:
        config = _get_table_config(entity)
        async with get_session() as session:
            result = await session.execute(
                select(config["model"]).where(*self._where(config, equals)).limit(1)
            )
            row = result.scalar_one_or_none()
        if row is None:
            return None
        return _row_to_record(config, row)

    async def insert(self, entity: SyncEntity, record: SyncableRecord) -> SyncableRecord:
        config = _get_table_config(entity)
        record.before_save()
        async with get_session() as session:
            session.add(config["model"](**_record_to_row(config, record)))
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise _violation(entity, exc, record) from exc
        return record

    async def update(
        self,
        entity: SyncEntity,
        record_id: uuid.UUID,
        patch: dict[str, Any],
    ) -> SyncableRecord:
        config = _get_table_config(entity)
        async with get_session() as session:
            row = await session.get(config["model"], record_id)
            if row is None:
                raise RecordNotFoundError(str(entity), record_id)

            merged = _row_to_record(config, row).model_copy(update=patch)
            merged.before_save()
            for field in _written_fields(merged, patch):
                setattr(row, _column_name(config, field), getattr(merged, field))
            try:
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise _violation(entity, exc, merged) from exc
        return merged

    async def upsert_by_key(
        self,
        entity: SyncEntity,
        key: str,
        insert_record: SyncableRecord,
        update_patch: dict[str, Any],
    ) -> tuple[SyncableRecord, bool]:
        config = _get_table_config(entity)
        model = config["model"]
        table = model.__table__
        key_column: str = _column_name(config, key)

        insert_record.before_save()
        row_values = _record_to_row(config, insert_record)

        async with get_session() as session:
            existing_result = await session.execute(
                select(model).where(getattr(model, key_column) == row_values[key_column])
            )
            existing_row = existing_result.scalar_one_or_none()
            base = (
                _row_to_record(config, existing_row)
                if existing_row is not None
                else insert_record
            )
            merged = base.model_copy(update=update_patch)
            merged.before_save()
            set_cols: dict[str, Any] = {
                _column_name(config, field): getattr(merged, field)
                for field in _written_fields(merged, update_patch)
            }

            stmt = (
                pg_insert(table)
                .values(**row_values)
                .on_conflict_do_update(
                    index_elements=[key_column],
                    index_where=text(f"{key_column} IS NOT NULL"),
                    set_=set_cols,
                )
                .returning(*table.c, literal_column("(xmax = 0)").label("inserted"))
            )
            try:
                result = await session.execute(stmt)
                returned = result.one()
                await session.commit()
            except IntegrityError as exc:
                await session.rollback()
                raise _violation(entity, exc, insert_record) from exc

        mapping = returned._mapping
        return _mapping_to_record(config, mapping), bool(mapping["inserted"])

    async def count_distinct(self, entity: SyncEntity, field: str, **equals: Any) -> int:
        config = _get_table_config(entity)
        column = getattr(config["model"], _column_name(config, field))
        async with get_session() as session:
            result = await session.execute(
                select(func.count(func.distinct(column))).where(*self._where(config, equals))
            )
            return int(result.scalar_one())

    async def find_push_candidates(
        self,
        entity: SyncEntity,
        mode: PushMode,
        limit: int,
    ) -> list[SyncableRecord]:
        config = _get_table_config(entity)
        model = config["model"]

        missing_ref = model.external_id.is_(None)
        association_error = model.last_sync_error.op("~*")(ASSOCIATION_ERROR_REGEX)
        if mode == PushMode.ONLY_MISSING_EXTERNAL_REF:
            selector = missing_ref
        elif mode == PushMode.ONLY_ASSOCIATION_ERROR:
            selector = and_(model.external_id.isnot(None), association_error)
        else:
            selector = or_(missing_ref, association_error)

        conditions: list[Any] = [selector]
        if config["approvable"]:
            conditions.append(model.approval_status == ApprovalStatus.APPROVED.value)
        if entity == SyncEntity.CUSTOMER:
            conditions.append(model.email.isnot(None))

        query = (
            select(model)
            .where(*conditions)
            .order_by(model.created_at.asc().nulls_first())
            .limit(limit)
        )
        async with get_session() as session:
            result = await session.execute(query)
            rows = result.scalars().all()
        return [_row_to_record(config, row) for row in rows]

    async def get_actor(self, actor_id: uuid.UUID) -> Optional[ActorRef]:
        from models.user import User

        async with get_session() as session:
            user = await session.get(User, actor_id)
        if user is None:
            return None
        return ActorRef(id=user.id, email=user.email, name=user.name, role=user.role)

    async def find_user_matching(self, field: str, pattern: str) -> Optional[ActorRef]:
        from models.user import User

        if field not in USER_MATCH_FIELDS:
            raise ValueError(f"Cannot match users on {field!r}")
        column = getattr(User, field)
        async with get_session() as session:
            result = await session.execute(
                select(User).where(column.op("~*")(pattern)).order_by(User.created_at).limit(1)
            )
            user = result.scalar_one_or_none()
        if user is None:
            return None
        return ActorRef(id=user.id, email=user.email, name=user.name, role=user.role)

    async def increment_revenue_targets(
        self,
        salesman_id: uuid.UUID,
        sales_date: datetime,
        amount: Decimal,
    ) -> int:
        from models.sales_target import SalesTarget

        stmt = (
            sa_update(SalesTarget)
            .where(
                SalesTarget.salesman_id == salesman_id,
                SalesTarget.target_type == "Revenue",
                SalesTarget.status == "Active",
                SalesTarget.start_date <= sales_date,
                SalesTarget.end_date >= sales_date,
            )
            .values(current_progress=SalesTarget.current_progress + amount)
        )
        async with get_session() as session:
            result = await session.execute(stmt)
            await session.commit()
        updated: int = result.rowcount or 0
        logger.info(
            "[RecordStore] Incremented %d revenue target(s) for salesman %s by %s",
            updated, salesman_id, amount,
        )
        return updated
