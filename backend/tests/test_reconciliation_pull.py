import asyncio
from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from connectors.models import (
    ApprovalStatus,
    CustomerRecord,
    DerivedStatus,
    Provenance,
    SyncEntity,
    TaskPriority,
    TaskRecord,
    TaskType,
    VisitTargetRecord,
)
from fakes import FakeCRM, FakeRecordStore, RecordingDispatcher
from services.approvals import ApprovalWorkflow
from services.reconciliation import (
    PullFilter,
    ReconciliationEngine,
    map_task_priority,
    map_task_type,
)


def _crm_task(external_id: str = "9001", **properties) -> dict:
    props = {
        "hs_task_subject": "Follow up on sample",
        "hs_timestamp": "946684800",
        "hubspot_owner_id": "77",
        "hs_task_status": "NOT_STARTED",
    }
    props.update(properties)
    return {
        "id": external_id,
        "properties": props,
        "associations": {"contacts": {"results": [{"id": "501"}]}},
    }


def _setup():
    store = FakeRecordStore()
    crm = FakeCRM()
    actor = store.add_user("ops@example.com", "Ops", role="admin")
    crm.add_contact("501", "buyer@example.com", "Priya", "Shah", company="Shah Traders")
    return store, crm, actor, ReconciliationEngine(store, crm)


def _snapshot(store: FakeRecordStore) -> dict[str, dict]:
    return {
        t.external_id: t.model_dump(exclude={"last_synced_at", "updated_at"})
        for t in store.all(SyncEntity.TASK)
    }


def test_pull_is_idempotent() -> None:
    store, crm, actor, engine = _setup()
    crm.tasks = [_crm_task("9001"), _crm_task("9002", hs_task_subject="Second")]

    first = asyncio.run(engine.pull(actor))
    before = _snapshot(store)
    second = asyncio.run(engine.pull(actor))

    assert (first.fetched, first.created, first.updated, first.skipped) == (2, 2, 0, 0)
    assert (second.fetched, second.created, second.updated, second.skipped) == (2, 0, 2, 0)
    assert sorted(before) == ["9001", "9002"]
    assert _snapshot(store) == before


def test_pull_without_timestamps_keeps_first_due_date() -> None:
    store, crm, actor, engine = _setup()
    crm.tasks = [{"id": "9001", "properties": {"hs_task_subject": "No dates"}}]

    asyncio.run(engine.pull(actor))
    before = _snapshot(store)
    asyncio.run(engine.pull(actor))

    assert _snapshot(store) == before
    assert store.all(SyncEntity.TASK)[0].due_date == before["9001"]["due_date"]


def test_pushed_companion_task_survives_reimport() -> None:
    store, crm, actor, engine = _setup()
    rep = store.add_user("rep@example.com", "Rep")
    target = store.seed(
        SyncEntity.VISIT_TARGET,
        VisitTargetRecord(
            name="Sharma Hardware",
            salesman_id=rep.id,
            priority=TaskPriority.URGENT,
            approval_status=ApprovalStatus.APPROVED,
        ),
    )
    workflow = ApprovalWorkflow(store, RecordingDispatcher())
    companion = asyncio.run(workflow.ensure_companion_task(target.id, actor))
    asyncio.run(engine.push_one(SyncEntity.TASK, companion.id))
    crm.tasks = list(crm.created_tasks)

    result = asyncio.run(engine.pull(actor))
    again = asyncio.run(workflow.ensure_companion_task(target.id, actor))

    stored = asyncio.run(store.find_one(SyncEntity.TASK, id=companion.id))
    assert result.updated == 1
    assert stored.type == TaskType.VISIT
    assert stored.priority == companion.priority
    assert stored.owner_id == rep.id
    assert again.id == companion.id
    assert len(store.all(SyncEntity.TASK)) == 1


def test_reimport_keeps_owner_of_app_task_without_crm_owner() -> None:
    store, crm, actor, engine = _setup()
    rep = store.add_user("rep@example.com", "Rep")
    local = store.seed(
        SyncEntity.TASK,
        TaskRecord(
            external_id="9001",
            type=TaskType.SAMPLE_FEEDBACK,
            priority=TaskPriority.URGENT,
            due_date=datetime(2030, 1, 1, tzinfo=timezone.utc),
            owner_id=rep.id,
            provenance=Provenance.APP,
            approval_status=ApprovalStatus.APPROVED,
        ),
    )
    item = _crm_task("9001", hs_task_type="TODO", hs_task_priority="HIGH")
    del item["properties"]["hubspot_owner_id"]
    crm.tasks = [item]

    asyncio.run(engine.pull(actor))

    stored = asyncio.run(store.find_one(SyncEntity.TASK, id=local.id))
    assert stored.owner_id == rep.id
    assert stored.type == TaskType.SAMPLE_FEEDBACK
    assert stored.priority == TaskPriority.URGENT


def test_reimport_reassigns_owner_on_real_match() -> None:
    store, crm, actor, engine = _setup()
    rep = store.add_user("rep@example.com", "Rep")
    asha = store.add_user("asha@example.com", "Asha Nair")
    crm.owners["77"] = {"id": "77", "email": "asha@example.com", "firstName": "Asha", "lastName": "Nair"}
    local = store.seed(
        SyncEntity.TASK,
        TaskRecord(
            external_id="9001",
            due_date=datetime(2030, 1, 1, tzinfo=timezone.utc),
            owner_id=rep.id,
            provenance=Provenance.EXTERNAL,
            approval_status=ApprovalStatus.APPROVED,
        ),
    )
    crm.tasks = [_crm_task("9001", hs_task_type="EMAIL")]

    asyncio.run(engine.pull(actor))

    stored = asyncio.run(store.find_one(SyncEntity.TASK, id=local.id))
    assert stored.owner_id == asha.id
    assert stored.type == TaskType.EMAIL


def test_window_needs_both_ends_in_order() -> None:
    start = datetime(2024, 6, 2, tzinfo=timezone.utc)
    end = datetime(2024, 6, 1, tzinfo=timezone.utc)

    with pytest.raises(ValidationError):
        PullFilter(window_start=start)
    with pytest.raises(ValidationError):
        PullFilter(window_start=start, window_end=end)
    assert PullFilter(window_start=end, window_end=start).window_end == start


def test_seconds_timestamp_without_type_imports_as_call_at_2000() -> None:
    store, crm, actor, engine = _setup()
    crm.tasks = [_crm_task("9001")]

    asyncio.run(engine.pull(actor))

    task = store.all(SyncEntity.TASK)[0]
    assert task.type == TaskType.CALL
    assert task.due_date == datetime(2000, 1, 1, tzinfo=timezone.utc)
    assert task.derived_status == DerivedStatus.OVERDUE
    assert task.provenance == Provenance.EXTERNAL
    assert task.approval_status == ApprovalStatus.APPROVED
    assert task.last_synced_at is not None


def test_imported_task_carries_contact_company_and_owner() -> None:
    store, crm, actor, engine = _setup()
    asha = store.add_user("asha@example.com", "Asha Nair")
    crm.owners["77"] = {"id": "77", "email": "ASHA@example.com", "firstName": "Asha", "lastName": "Nair"}
    customer = store.seed(SyncEntity.CUSTOMER, CustomerRecord(name="Priya Shah", email="buyer@example.com"))
    crm.tasks = [_crm_task("9001", hs_task_type="EMAIL", hs_task_priority="HIGH")]

    asyncio.run(engine.pull(actor))

    task = store.all(SyncEntity.TASK)[0]
    assert task.owner_id == asha.id
    assert task.external_owner_name == "Asha Nair"
    assert task.type == TaskType.EMAIL
    assert task.priority == TaskPriority.HIGH
    assert task.customer_id == customer.id
    assert task.customer_email == "buyer@example.com"
    assert task.external_contact_id == "501"
    assert task.external_company_name == "Shah Traders"


def test_unknown_owner_falls_back_to_acting_user() -> None:
    store, crm, actor, engine = _setup()
    crm.tasks = [_crm_task("9001", hubspot_owner_id="404")]

    asyncio.run(engine.pull(actor))

    assert store.all(SyncEntity.TASK)[0].owner_id == actor.id


def test_app_provenance_survives_reimport() -> None:
    store, crm, actor, engine = _setup()
    local = store.seed(
        SyncEntity.TASK,
        TaskRecord(
            external_id="9001",
            subject="Old subject",
            notes="Customer prefers mornings",
            due_date=datetime(2030, 1, 1, tzinfo=timezone.utc),
            owner_id=actor.id,
            provenance=Provenance.APP,
            approval_status=ApprovalStatus.APPROVED,
        ),
    )
    crm.tasks = [_crm_task("9001", hs_task_subject="New subject")]

    result = asyncio.run(engine.pull(actor))

    stored = asyncio.run(store.find_one(SyncEntity.TASK, id=local.id))
    assert result.updated == 1
    assert stored.provenance == Provenance.APP
    assert stored.subject == "New subject"
    assert stored.notes == "Customer prefers mornings"


def test_blank_provenance_becomes_external_on_import() -> None:
    store, crm, actor, engine = _setup()
    local = store.seed(
        SyncEntity.TASK,
        TaskRecord(
            external_id="9001",
            due_date=datetime(2030, 1, 1, tzinfo=timezone.utc),
            owner_id=actor.id,
            provenance="",
        ),
    )
    crm.tasks = [_crm_task("9001")]

    asyncio.run(engine.pull(actor))

    stored = asyncio.run(store.find_one(SyncEntity.TASK, id=local.id))
    assert stored.provenance == Provenance.EXTERNAL


def test_external_completion_completes_and_approves_pending_task() -> None:
    store, crm, actor, engine = _setup()
    local = store.seed(
        SyncEntity.TASK,
        TaskRecord(
            external_id="9001",
            due_date=datetime(2030, 1, 1, tzinfo=timezone.utc),
            owner_id=actor.id,
            provenance=Provenance.APP,
            approval_status=ApprovalStatus.PENDING,
        ),
    )
    crm.tasks = [_crm_task("9001", hs_task_status="COMPLETED")]

    asyncio.run(engine.pull(actor))

    stored = asyncio.run(store.find_one(SyncEntity.TASK, id=local.id))
    assert stored.derived_status == DerivedStatus.COMPLETED
    assert stored.completed_date is not None
    assert stored.approval_status == ApprovalStatus.APPROVED
    assert stored.approved_by == actor.id


def test_malformed_items_are_skipped_without_aborting_the_pass() -> None:
    store, crm, actor, engine = _setup()
    crm.tasks = [
        {"properties": {"hs_task_subject": "No id"}},
        _crm_task("9001", hs_task_subject={"value": "structured"}),
        _crm_task("9002"),
    ]

    result = asyncio.run(engine.pull(actor))

    assert (result.fetched, result.created, result.skipped) == (3, 1, 2)
    assert [t.external_id for t in store.all(SyncEntity.TASK)] == ["9002"]


def test_pull_limit_is_clamped() -> None:
    store, crm, actor, engine = _setup()
    crm.tasks = [_crm_task(str(9000 + i)) for i in range(5)]

    result = asyncio.run(engine.pull(actor, PullFilter(limit=2)))

    assert result.fetched == 2
    assert len(store.all(SyncEntity.TASK)) == 2


def test_type_and_priority_mapping() -> None:
    assert map_task_type("EMAIL") == TaskType.EMAIL
    assert map_task_type("Meeting") == TaskType.VISIT
    assert map_task_type("site visit") == TaskType.VISIT
    assert map_task_type("TODO") == TaskType.CALL
    assert map_task_type(None) == TaskType.CALL
    assert map_task_priority("URGENT") == TaskPriority.URGENT
    assert map_task_priority("HIGH") == TaskPriority.HIGH
    assert map_task_priority("LOW") == TaskPriority.LOW
    assert map_task_priority("NONE") == TaskPriority.MEDIUM


def test_pull_contacts_upserts_customers_by_email() -> None:
    store, crm, actor, engine = _setup()
    existing = store.seed(
        SyncEntity.CUSTOMER,
        CustomerRecord(
            name="Priya Shah",
            email="buyer@example.com",
            status="Visited",
            provenance=Provenance.APP,
        ),
    )
    crm.contacts["501"]["properties"]["phone"] = "+91 98450 00000"
    crm.add_contact("502", "NEW.Lead@Example.com", "Rahul", "Verma")
    crm.add_contact("503", "not-an-email", "Broken")

    result = asyncio.run(engine.pull_contacts(actor))

    assert (result.fetched, result.created, result.updated, result.skipped) == (3, 1, 1, 1)
    updated = asyncio.run(store.find_one(SyncEntity.CUSTOMER, id=existing.id))
    assert updated.phone == "+91 98450 00000"
    assert updated.status == "Visited"
    assert updated.provenance == Provenance.APP
    assert updated.external_id == "501"
    created = asyncio.run(store.find_one(SyncEntity.CUSTOMER, email="new.lead@example.com"))
    assert created.name == "Rahul Verma"
    assert created.provenance == Provenance.EXTERNAL


def test_consistency_violation_skips_item() -> None:
    store, crm, actor, engine = _setup()
    # Another customer already holds the CRM id of contact 501
    store.seed(SyncEntity.CUSTOMER, CustomerRecord(name="Other", email="other@example.com", external_id="501"))

    result = asyncio.run(engine.pull_contacts(actor))

    assert result.skipped == 1
    assert asyncio.run(store.find_one(SyncEntity.CUSTOMER, email="buyer@example.com")) is None


def test_task_without_owner_uses_actor_even_when_owner_id_missing() -> None:
    store, crm, actor, engine = _setup()
    item = _crm_task("9001")
    del item["properties"]["hubspot_owner_id"]
    crm.tasks = [item]

    asyncio.run(engine.pull(actor))

    task = store.all(SyncEntity.TASK)[0]
    assert task.owner_id == actor.id
    assert task.external_owner_id is None
    assert crm.owner_fetches == 0


def test_owner_details_are_fetched_once_per_pass() -> None:
    store, crm, actor, engine = _setup()
    crm.owners["77"] = {"id": "77", "email": "ops@example.com", "firstName": "Ops", "lastName": ""}
    crm.tasks = [_crm_task("9001"), _crm_task("9002")]

    asyncio.run(engine.pull(actor))

    assert crm.owner_fetches == 1
    assert {t.owner_id for t in store.all(SyncEntity.TASK)} == {actor.id}
