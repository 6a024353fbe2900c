import uuid
from datetime import date, datetime, timezone

from connectors.models import (
    CustomerRecord,
    DerivedStatus,
    Provenance,
    TaskPriority,
    TaskRecord,
    TaskType,
    derive_task_status,
    is_valid_email,
    merge_imported_customer,
    merge_imported_task,
    merge_provenance,
)


TODAY = date(2024, 6, 1)


def _task(**overrides) -> TaskRecord:
    fields = {
        "due_date": datetime(2024, 6, 10, tzinfo=timezone.utc),
        "owner_id": uuid.uuid4(),
    }
    fields.update(overrides)
    return TaskRecord(**fields)


def test_derive_task_status_from_due_date() -> None:
    assert derive_task_status(
        datetime(2024, 5, 31, 23, tzinfo=timezone.utc), DerivedStatus.UPCOMING, TODAY
    ) == DerivedStatus.OVERDUE
    assert derive_task_status(
        datetime(2024, 6, 1, 8, tzinfo=timezone.utc), DerivedStatus.UPCOMING, TODAY
    ) == DerivedStatus.TODAY
    assert derive_task_status(
        datetime(2024, 6, 2, tzinfo=timezone.utc), DerivedStatus.OVERDUE, TODAY
    ) == DerivedStatus.UPCOMING


def test_completed_status_is_terminal() -> None:
    assert derive_task_status(
        datetime(2020, 1, 1, tzinfo=timezone.utc), DerivedStatus.COMPLETED, TODAY
    ) == DerivedStatus.COMPLETED


def test_before_save_recomputes_status_and_timestamps() -> None:
    task = _task(due_date=datetime(2024, 5, 1, tzinfo=timezone.utc))
    task.before_save(now=datetime(2024, 6, 1, 12, tzinfo=timezone.utc))

    assert task.derived_status == DerivedStatus.OVERDUE
    assert task.created_at == datetime(2024, 6, 1, 12, tzinfo=timezone.utc)
    assert task.updated_at == task.created_at


def test_blank_provenance_is_unset() -> None:
    assert _task(provenance="").provenance is None
    assert _task(provenance="  ").provenance is None
    assert merge_provenance("") == Provenance.EXTERNAL
    assert merge_provenance(None) == Provenance.EXTERNAL
    assert merge_provenance(Provenance.APP) == Provenance.APP


def test_merge_imported_task_only_overwrites_with_non_empty_values() -> None:
    owner = uuid.uuid4()
    existing = _task(
        owner_id=owner,
        subject="Collect cheque",
        notes="Bring receipt book",
        provenance=Provenance.APP,
        external_id="9001",
    )
    incoming = _task(
        owner_id=owner,
        subject="",
        description="Updated in CRM",
        provenance=Provenance.EXTERNAL,
        external_id="9001",
    )

    patch = merge_imported_task(existing, incoming)

    assert patch["description"] == "Updated in CRM"
    assert "subject" not in patch
    assert "notes" not in patch
    assert "provenance" not in patch
    assert "approval_status" not in patch


def test_merge_imported_task_keeps_fallback_fields_and_local_classification() -> None:
    existing = _task(
        type=TaskType.VISIT,
        priority=TaskPriority.URGENT,
        visit_target_id=uuid.uuid4(),
        provenance=Provenance.EXTERNAL,
        external_id="9001",
    )
    incoming = _task(
        type=TaskType.CALL,
        priority=TaskPriority.HIGH,
        due_date=datetime(2024, 7, 1, tzinfo=timezone.utc),
        subject="Renamed in CRM",
        external_id="9001",
    )

    patch = merge_imported_task(existing, incoming, frozenset({"owner_id", "due_date"}))

    assert patch == {"subject": "Renamed in CRM"}


def test_merge_imported_task_claims_unset_provenance() -> None:
    owner = uuid.uuid4()
    existing = _task(owner_id=owner, provenance=None, external_id="9001")
    incoming = _task(owner_id=owner, provenance=Provenance.EXTERNAL, external_id="9001")

    patch = merge_imported_task(existing, incoming)

    assert patch == {"provenance": Provenance.EXTERNAL}


def test_merge_imported_customer_keeps_status_and_app_provenance() -> None:
    existing = CustomerRecord(
        name="Ravi Kumar",
        email="ravi@example.com",
        status="Visited",
        provenance=Provenance.APP,
    )
    incoming = CustomerRecord(
        external_id="301",
        name="Ravi Kumar",
        email="ravi@example.com",
        phone="+91 98450 00000",
        provenance=Provenance.EXTERNAL,
    )

    patch = merge_imported_customer(existing, incoming)

    assert patch == {"phone": "+91 98450 00000", "external_id": "301"}


def test_customer_email_is_normalized_on_save() -> None:
    customer = CustomerRecord(name="Meera", email="  Meera@Example.COM ")
    customer.before_save()

    assert customer.email == "meera@example.com"


def test_is_valid_email() -> None:
    assert is_valid_email("buyer@example.com")
    assert not is_valid_email("buyer@example")
    assert not is_valid_email("buyer example@example.com")
    assert not is_valid_email("")
    assert not is_valid_email(None)
