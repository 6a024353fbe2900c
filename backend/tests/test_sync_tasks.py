import asyncio
from datetime import datetime, timezone

from connectors.models import ActorRef, ApprovalStatus, SyncEntity, TaskRecord, VisitTargetRecord
from fakes import FakeCRM, FakeRecordStore, RecordingDispatcher
from services.approvals import ApprovalWorkflow
from services.reconciliation import ReconciliationEngine
from workers.celery_app import celery_app
from workers.tasks import sync as sync_tasks


def test_beat_schedule_runs_pull_and_association_retry() -> None:
    schedule = celery_app.conf.beat_schedule
    tasks = {entry["task"] for entry in schedule.values()}

    assert "workers.tasks.sync.pull_tasks" in tasks
    assert "workers.tasks.sync.retry_failed_associations" in tasks
    assert all(entry["options"]["queue"] == "sync" for entry in schedule.values())


def test_scheduled_pull_is_skipped_without_system_actor(monkeypatch) -> None:
    from config import settings

    monkeypatch.setattr(settings, "SYNC_SYSTEM_ACTOR_ID", None)

    result = asyncio.run(sync_tasks._pull_tasks(None, None, None, None))

    assert result["status"] == "skipped"


def test_pull_task_runs_engine(monkeypatch) -> None:
    store = FakeRecordStore()
    crm = FakeCRM()
    actor = store.add_user("ops@example.com", "Ops", role="admin")
    crm.tasks = [{"id": "9001", "properties": {"hs_timestamp": "1700000000"}}]

    async def _fake_load_actor(actor_id):
        return actor

    monkeypatch.setattr(sync_tasks, "_load_actor", _fake_load_actor)
    monkeypatch.setattr(sync_tasks, "_build_engine", lambda: ReconciliationEngine(store, crm))

    result = sync_tasks.pull_tasks.run(
        str(actor.id), None, "2023-11-14T00:00:00Z", "2023-11-15T00:00:00Z"
    )

    assert result["status"] == "completed"
    assert result["created"] == 1


def test_push_record_task_pushes_single_record(monkeypatch) -> None:
    store = FakeRecordStore()
    crm = FakeCRM()
    owner = store.add_user("rep@example.com", "Rep")
    task = store.seed(
        SyncEntity.TASK,
        TaskRecord(
            due_date=datetime(2030, 1, 1, tzinfo=timezone.utc),
            owner_id=owner.id,
            approval_status=ApprovalStatus.APPROVED,
        ),
    )
    monkeypatch.setattr(sync_tasks, "_build_engine", lambda: ReconciliationEngine(store, crm))

    result = sync_tasks.push_record.run("task", str(task.id))

    assert result["synced"] == 1
    assert len(crm.created_tasks) == 1


def test_retry_failed_associations_reports_each_entity(monkeypatch) -> None:
    store = FakeRecordStore()
    crm = FakeCRM()
    monkeypatch.setattr(sync_tasks, "_build_engine", lambda: ReconciliationEngine(store, crm))

    result = sync_tasks.retry_failed_associations.run()

    assert result["mode"] == "only_association_error"
    assert set(result["results"]) == {"task", "sales_submission"}
    assert all(r["status"] == "completed" for r in result["results"].values())


def test_ensure_companion_task_job(monkeypatch) -> None:
    store = FakeRecordStore()
    dispatcher = RecordingDispatcher()
    admin = store.add_user("admin@example.com", "Admin", role="admin")
    target = store.seed(
        SyncEntity.VISIT_TARGET,
        VisitTargetRecord(name="Sharma Hardware", salesman_id=admin.id, approval_status=ApprovalStatus.APPROVED),
    )

    async def _fake_load_actor(actor_id):
        return ActorRef(id=admin.id, role="admin")

    monkeypatch.setattr(sync_tasks, "_load_actor", _fake_load_actor)
    monkeypatch.setattr(sync_tasks, "_build_workflow", lambda: ApprovalWorkflow(store, dispatcher))

    first = sync_tasks.ensure_companion_task.run(str(target.id), str(admin.id))
    second = sync_tasks.ensure_companion_task.run(str(target.id), str(admin.id))

    assert first["task_id"] == second["task_id"]
    assert len(store.all(SyncEntity.TASK)) == 1
    assert len(dispatcher.pushes) == 1
