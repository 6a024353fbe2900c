import uuid
from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient

from api.dependencies import get_dispatcher, get_record_store
from api.main import app
from connectors.models import ApprovalStatus, SyncEntity, TaskRecord, VisitTargetRecord
from fakes import FakeRecordStore, RecordingDispatcher


@pytest.fixture
def fakes():
    store = FakeRecordStore()
    dispatcher = RecordingDispatcher()
    app.dependency_overrides[get_record_store] = lambda: store
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    admin = store.add_user("admin@example.com", "Admin", role="admin")
    yield store, dispatcher, admin
    app.dependency_overrides.clear()


client = TestClient(app)


def _pending_task(store: FakeRecordStore, owner_id: uuid.UUID) -> TaskRecord:
    return store.seed(
        SyncEntity.TASK,
        TaskRecord(
            subject="Collect payment",
            due_date=datetime(2030, 1, 15, tzinfo=timezone.utc),
            owner_id=owner_id,
        ),
    )


def _headers(actor) -> dict[str, str]:
    return {"X-Actor-Id": str(actor.id)}


def test_approve_task(fakes) -> None:
    store, dispatcher, admin = fakes
    task = _pending_task(store, admin.id)

    response = client.post(f"/api/tasks/{task.id}/approve", headers=_headers(admin))

    assert response.status_code == 200
    payload = response.json()
    assert payload["approval_status"] == "Approved"
    assert payload["approved_by"] == str(admin.id)
    assert payload["entity"] == "task"
    assert dispatcher.pushes == [(SyncEntity.TASK, task.id)]


def test_approve_visit_target_schedules_companion_task(fakes) -> None:
    store, dispatcher, admin = fakes
    target = store.seed(
        SyncEntity.VISIT_TARGET,
        VisitTargetRecord(name="Sharma Hardware", salesman_id=admin.id),
    )

    response = client.post(f"/api/visit-targets/{target.id}/approve", headers=_headers(admin))

    assert response.status_code == 200
    assert dispatcher.companions == [(target.id, admin.id)]


def test_reject_requires_reason(fakes) -> None:
    store, _, admin = fakes
    task = _pending_task(store, admin.id)

    response = client.post(f"/api/tasks/{task.id}/reject", json={}, headers=_headers(admin))

    assert response.status_code == 422


def test_reject_then_approve_conflicts(fakes) -> None:
    store, _, admin = fakes
    task = _pending_task(store, admin.id)

    rejected = client.post(
        f"/api/tasks/{task.id}/reject",
        json={"reason": "Duplicate of an existing task"},
        headers=_headers(admin),
    )
    approved = client.post(f"/api/tasks/{task.id}/approve", headers=_headers(admin))

    assert rejected.status_code == 200
    assert rejected.json()["rejection_reason"] == "Duplicate of an existing task"
    assert approved.status_code == 409


def test_reopen_returns_to_pending(fakes) -> None:
    store, _, admin = fakes
    task = _pending_task(store, admin.id)
    client.post(f"/api/tasks/{task.id}/approve", headers=_headers(admin))

    response = client.post(f"/api/tasks/{task.id}/reopen", headers=_headers(admin))

    assert response.status_code == 200
    assert response.json()["approval_status"] == ApprovalStatus.PENDING.value
    assert response.json()["approved_by"] is None


def test_unknown_record_is_404(fakes) -> None:
    _, _, admin = fakes

    response = client.post(f"/api/sales-submissions/{uuid.uuid4()}/approve", headers=_headers(admin))

    assert response.status_code == 404


def test_unknown_collection_is_404(fakes) -> None:
    _, _, admin = fakes

    response = client.post(f"/api/customers/{uuid.uuid4()}/approve", headers=_headers(admin))

    assert response.status_code == 404
