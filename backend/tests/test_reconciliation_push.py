import asyncio
import uuid
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from connectors.models import (
    ApprovalStatus,
    CustomerRecord,
    Provenance,
    SalesSubmissionRecord,
    SyncEntity,
    TaskRecord,
)
from fakes import FakeCRM, FakeRecordStore
from services.reconciliation import (
    PushFilter,
    ReconciliationEngine,
    contact_properties,
    task_properties,
)
from services.record_store import PushMode
from services.sync_errors import (
    ASSOCIATION_FAILED_MESSAGE,
    NO_CONTACT_MESSAGE,
    RecordValidationError,
    is_association_error,
)


def _setup():
    store = FakeRecordStore()
    crm = FakeCRM()
    actor = store.add_user("rep@example.com", "Field Rep")
    return store, crm, actor, ReconciliationEngine(store, crm)


def _approved_task(store: FakeRecordStore, owner_id: uuid.UUID, **overrides) -> TaskRecord:
    fields = {
        "subject": "Collect payment",
        "due_date": datetime(2030, 1, 15, tzinfo=timezone.utc),
        "owner_id": owner_id,
        "customer_name": "Priya Shah",
        "customer_email": "buyer@example.com",
        "approval_status": ApprovalStatus.APPROVED,
        "provenance": Provenance.APP,
    }
    fields.update(overrides)
    return store.seed(SyncEntity.TASK, TaskRecord(**fields))


def test_push_creates_task_contact_and_association_once() -> None:
    store, crm, actor, engine = _setup()
    task = _approved_task(store, actor.id)

    first = asyncio.run(engine.push(SyncEntity.TASK))
    second = asyncio.run(engine.push(SyncEntity.TASK))

    assert (first.attempted, first.synced, first.failed) == (1, 1, [])
    assert second.attempted == 0
    assert len(crm.created_tasks) == 1
    stored = asyncio.run(store.find_one(SyncEntity.TASK, id=task.id))
    assert stored.external_id == crm.created_tasks[0]["id"]
    assert stored.last_sync_error is None
    contact_id = stored.external_contact_id
    assert crm.contacts[contact_id]["properties"]["email"] == "buyer@example.com"
    assert crm.associations == [("tasks", stored.external_id, "contacts", contact_id)]


def test_association_error_retry_only_associates() -> None:
    store, crm, actor, engine = _setup()
    crm.add_contact("501", "buyer@example.com", "Priya", "Shah")
    task = _approved_task(
        store,
        actor.id,
        external_id="555",
        external_contact_id="501",
        last_sync_error="Association failed (will auto-retry on next push)",
    )

    result = asyncio.run(engine.push(SyncEntity.TASK, PushFilter(mode=PushMode.ONLY_ASSOCIATION_ERROR)))

    assert result.synced == 1
    assert crm.created_tasks == []
    assert crm.contact_writes == []
    assert crm.associations == [("tasks", "555", "contacts", "501")]
    stored = asyncio.run(store.find_one(SyncEntity.TASK, id=task.id))
    assert stored.external_id == "555"
    assert stored.last_sync_error is None


def test_failed_association_is_recorded_and_retried_without_recreate() -> None:
    store, crm, actor, engine = _setup()
    task = _approved_task(store, actor.id)
    crm.fail_associations = True

    first = asyncio.run(engine.push(SyncEntity.TASK))

    stored = asyncio.run(store.find_one(SyncEntity.TASK, id=task.id))
    assert first.synced == 1
    assert stored.external_id is not None
    assert stored.last_sync_error == ASSOCIATION_FAILED_MESSAGE
    assert is_association_error(stored.last_sync_error)

    crm.fail_associations = False
    second = asyncio.run(engine.push(SyncEntity.TASK))

    stored = asyncio.run(store.find_one(SyncEntity.TASK, id=task.id))
    assert second.synced == 1
    assert len(crm.created_tasks) == 1
    assert stored.last_sync_error is None
    assert len(crm.associations) == 2


def test_task_without_contact_is_synced_with_warning() -> None:
    store, crm, actor, engine = _setup()
    task = _approved_task(store, actor.id, customer_email=None, customer_name=None)

    result = asyncio.run(engine.push(SyncEntity.TASK))

    stored = asyncio.run(store.find_one(SyncEntity.TASK, id=task.id))
    assert result.synced == 1
    assert stored.external_id is not None
    assert stored.last_sync_error == NO_CONTACT_MESSAGE
    assert crm.associations == []


def test_create_failure_is_recorded_and_pass_continues() -> None:
    store, crm, actor, engine = _setup()
    task = _approved_task(store, actor.id)
    crm.fail_create_task = True

    result = asyncio.run(engine.push(SyncEntity.TASK))

    stored = asyncio.run(store.find_one(SyncEntity.TASK, id=task.id))
    assert result.synced == 0
    assert [f.record_id for f in result.failed] == [str(task.id)]
    assert stored.external_id is None
    assert stored.last_sync_error == "CRM API error (502): Bad gateway"


def test_pending_tasks_are_not_pushed() -> None:
    store, crm, actor, engine = _setup()
    task = _approved_task(store, actor.id, approval_status=ApprovalStatus.PENDING)

    batch = asyncio.run(engine.push(SyncEntity.TASK))
    single = asyncio.run(engine.push_one(SyncEntity.TASK, task.id))

    assert batch.attempted == 0
    assert single.skipped == 1
    assert crm.created_tasks == []


def test_push_one_reports_missing_record() -> None:
    _, _, _, engine = _setup()
    record_id = uuid.uuid4()

    result = asyncio.run(engine.push_one(SyncEntity.TASK, record_id))

    assert result.failed[0].record_id == str(record_id)
    assert result.failed[0].message == "Record not found"


def test_existing_customer_contact_is_reused() -> None:
    store, crm, actor, engine = _setup()
    customer = store.seed(
        SyncEntity.CUSTOMER,
        CustomerRecord(name="Priya Shah", email="buyer@example.com", external_id="501"),
    )
    _approved_task(store, actor.id, customer_id=customer.id, customer_email=None)

    asyncio.run(engine.push(SyncEntity.TASK))

    assert crm.contact_writes == []
    assert crm.associations[0][3] == "501"


def test_new_contact_id_is_stored_on_customer() -> None:
    store, crm, actor, engine = _setup()
    customer = store.seed(SyncEntity.CUSTOMER, CustomerRecord(name="Priya Shah", email="buyer@example.com"))
    _approved_task(store, actor.id, customer_id=customer.id)

    asyncio.run(engine.push(SyncEntity.TASK))

    stored = asyncio.run(store.find_one(SyncEntity.CUSTOMER, id=customer.id))
    assert stored.external_id == crm.associations[0][3]


def test_sales_submission_is_pushed_as_order() -> None:
    store, crm, actor, engine = _setup()
    submission = store.seed(
        SyncEntity.SALES_SUBMISSION,
        SalesSubmissionRecord(
            salesman_id=actor.id,
            customer_name="Sharma Hardware",
            customer_email="owner@sharmahardware.in",
            sales_amount=Decimal("12500.50"),
            sales_date=datetime(2030, 3, 10, tzinfo=timezone.utc),
            approval_status=ApprovalStatus.APPROVED,
        ),
    )

    result = asyncio.run(engine.push(SyncEntity.SALES_SUBMISSION))

    assert result.synced == 1
    order = crm.created_orders[0]
    assert order["properties"]["hs_total_price"] == "12500.50"
    assert order["properties"]["hs_order_name"] == "Sales - Sharma Hardware - 2030-03-10"
    assert order["properties"]["hs_external_order_id"] == str(submission.id)
    assert crm.associations[0][:3] == ("orders", order["id"], "contacts")


def test_customers_cannot_be_pushed_through_record_push() -> None:
    _, _, _, engine = _setup()

    with pytest.raises(RecordValidationError):
        asyncio.run(engine.push(SyncEntity.CUSTOMER))


def test_push_customers_skips_invalid_emails() -> None:
    store, crm, _, engine = _setup()
    good = store.seed(
        SyncEntity.CUSTOMER,
        CustomerRecord(name="Rahul Verma", email="rahul@example.com", status="Active", pincode="560001"),
    )
    bad = store.seed(SyncEntity.CUSTOMER, CustomerRecord(name="No Email", email="not-an-email"))

    result = asyncio.run(engine.push_customers())

    assert (result.attempted, result.synced, result.skipped) == (1, 1, 1)
    assert crm.contact_writes[0]["firstname"] == "Rahul"
    assert crm.contact_writes[0]["lastname"] == "Verma"
    assert crm.contact_writes[0]["zip"] == "560001"
    assert crm.contact_writes[0]["hs_lead_status"] == "NEW"
    assert asyncio.run(store.find_one(SyncEntity.CUSTOMER, id=good.id)).external_id is not None
    assert asyncio.run(store.find_one(SyncEntity.CUSTOMER, id=bad.id)).external_id is None


def test_task_properties_payload() -> None:
    task = TaskRecord(
        subject=None,
        due_date=datetime(2000, 1, 1, tzinfo=timezone.utc),
        owner_id=uuid.uuid4(),
        external_owner_id="77",
    )

    properties = task_properties(task)

    assert properties["hs_task_subject"] == "Call follow-up"
    assert properties["hs_timestamp"] == "946684800000"
    assert properties["hs_task_type"] == "CALL"
    assert properties["hs_task_status"] == "NOT_STARTED"
    assert properties["hubspot_owner_id"] == "77"


def test_contact_properties_drop_empty_values() -> None:
    properties = contact_properties(CustomerRecord(name="Madonna", email=" Madonna@Example.com "))

    assert properties == {"email": "madonna@example.com", "firstname": "Madonna"}
