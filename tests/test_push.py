from __future__ import annotations

import pytest
from sqlalchemy import select

from omnisync.db import SessionLocal
from omnisync.errors import PushFailed
from omnisync.models import AuditEvent
from omnisync.schemas import TaskPatch
from omnisync.store import TaskStore
from omnisync.sync.push import push_create, push_delete, push_update
from omnisync.tasks_api.client import TasksApiError

from conftest import create_project, create_task, create_user, load_task
from fakes import FakeTasksApi

pytestmark = pytest.mark.anyio


async def test_push_create_links_new_task(monkeypatch) -> None:
  fake = FakeTasksApi().install(monkeypatch)
  owner = await create_user("owner@example.com")
  p = await create_project(owner)

  async with SessionLocal() as db:
    store = TaskStore(db)
    t = await store.create_task(p.id, TaskPatch(title="Write docs", description="all of them"))
    t = await push_create(store, project=p, task=t, access_token="at")
    task_id = t.id

  after = await load_task(task_id)
  assert (after.external_task_id, after.external_list_id) == ("ext-1", "list-1")
  assert after.external_origin is False
  op, body = fake.calls[0]
  assert op == "create"
  assert body["title"] == "Write docs"
  assert body["notes"] == "all of them"
  assert "id" not in body


async def test_push_create_failure_removes_local_task(monkeypatch) -> None:
  fake = FakeTasksApi().install(monkeypatch)
  fake.fail["create"] = TasksApiError(status_code=500, message="Backend Error")
  owner = await create_user("owner@example.com")
  p = await create_project(owner)

  async with SessionLocal() as db:
    store = TaskStore(db)
    t = await store.create_task(p.id, TaskPatch(title="Doomed"))
    task_id = t.id
    with pytest.raises(PushFailed) as exc:
      await push_create(store, project=p, task=t, access_token="at")

  assert "Backend Error" in exc.value.message
  assert await load_task(task_id) is None


async def test_push_update_failure_keeps_local_change_and_is_audited(monkeypatch) -> None:
  fake = FakeTasksApi().install(monkeypatch)
  fake.fail["update"] = TasksApiError(status_code=503, message="Unavailable")
  owner = await create_user("owner@example.com")
  p = await create_project(owner)
  t = await create_task(p, title="Old", external_task_id="g1", external_list_id="list-1")

  async with SessionLocal() as db:
    store = TaskStore(db)
    patch = TaskPatch(title="New")
    updated = await store.update_task(t.id, patch)
    ok = await push_update(store, project=p, task=updated, patch=patch, access_token="at", actor_id=owner.id)

  assert ok is False
  assert (await load_task(t.id)).title == "New"
  async with SessionLocal() as db:
    res = await db.execute(select(AuditEvent).where(AuditEvent.event_type == "task.push.update_failed"))
    ev = res.scalar_one()
  assert ev.task_id == t.id
  assert ev.payload["externalTaskId"] == "g1"
  assert ev.payload["fields"] == ["title"]


async def test_push_update_sends_only_outward_fields(monkeypatch) -> None:
  fake = FakeTasksApi().install(monkeypatch)
  owner = await create_user("owner@example.com")
  p = await create_project(owner)
  t = await create_task(p, title="Task", external_task_id="g1", external_list_id="list-1")

  async with SessionLocal() as db:
    store = TaskStore(db)
    local_only = TaskPatch(priority="high", tags=["x"])
    assert await push_update(store, project=p, task=t, patch=local_only, access_token="at") is False
    assert fake.calls == []

    outward = TaskPatch(priority="low", status="open", title="Renamed")
    assert await push_update(store, project=p, task=t, patch=outward, access_token="at") is True

  op, task_id, body = fake.calls[0]
  assert (op, task_id) == ("update", "g1")
  assert body == {"title": "Renamed", "status": "needsAction", "completed": None}


async def test_push_update_skips_unlinked_task(monkeypatch) -> None:
  fake = FakeTasksApi().install(monkeypatch)
  owner = await create_user("owner@example.com")
  p = await create_project(owner)
  t = await create_task(p, title="Local only")
  async with SessionLocal() as db:
    assert await push_update(TaskStore(db), project=p, task=t, patch=TaskPatch(title="x"), access_token="at") is False
  assert fake.calls == []


async def test_push_delete_failure_keeps_local_copy(monkeypatch) -> None:
  fake = FakeTasksApi().install(monkeypatch)
  fake.fail["delete"] = TasksApiError(status_code=500, message="Backend Error")
  owner = await create_user("owner@example.com")
  p = await create_project(owner)
  t = await create_task(p, title="Keep me", external_task_id="g1", external_list_id="list-1")

  async with SessionLocal() as db:
    with pytest.raises(PushFailed):
      await push_delete(TaskStore(db), project=p, task=t, access_token="at")

  assert await load_task(t.id) is not None


async def test_push_delete_treats_missing_external_task_as_gone(monkeypatch) -> None:
  fake = FakeTasksApi().install(monkeypatch)
  fake.fail["delete"] = TasksApiError(status_code=404, message="Not Found")
  owner = await create_user("owner@example.com")
  p = await create_project(owner)
  t = await create_task(p, title="Already gone", external_task_id="g1", external_list_id="list-1")

  async with SessionLocal() as db:
    await push_delete(TaskStore(db), project=p, task=t, access_token="at")

  assert await load_task(t.id) is None
  assert fake.calls == [("delete", "g1")]
