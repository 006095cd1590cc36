from __future__ import annotations

import itertools
from typing import Any

import omnisync.routers.projects as projects_router
import omnisync.sync.push as push
import omnisync.sync.service as sync_service
from omnisync.schemas import ExternalTask, ExternalTaskList
from omnisync.tasks_api.client import TasksApiError


class FakeTasksApi:
  """In-memory stand-in for the provider's task endpoints, patched in at the call sites."""

  def __init__(self, tasks: list[dict[str, Any]] | None = None) -> None:
    self.tasks: dict[str, dict[str, Any]] = {}
    for t in tasks or []:
      self.tasks[t.get("id") or f"missing-{len(self.tasks)}"] = dict(t)
    self._raw_listing: list[dict[str, Any]] | None = None
    self.calls: list[tuple[str, Any]] = []
    self.fail: dict[str, TasksApiError] = {}
    self._ids = itertools.count(1)

  def set_listing(self, items: list[dict[str, Any]]) -> None:
    self._raw_listing = items

  def install(self, monkeypatch) -> "FakeTasksApi":
    monkeypatch.setattr(sync_service, "tasks_list_tasks", self.list_tasks)
    monkeypatch.setattr(push, "tasks_create_task", self.create_task)
    monkeypatch.setattr(push, "tasks_update_task", self.update_task)
    monkeypatch.setattr(push, "tasks_delete_task", self.delete_task)
    monkeypatch.setattr(projects_router, "tasks_create_tasklist", self.create_tasklist)
    monkeypatch.setattr(projects_router, "tasks_delete_tasklist", self.delete_tasklist)
    return self

  def _maybe_fail(self, op: str) -> None:
    err = self.fail.get(op)
    if err is not None:
      raise err

  async def list_tasks(self, *, auth, list_id):
    self.calls.append(("list", list_id))
    self._maybe_fail("list")
    items = self._raw_listing if self._raw_listing is not None else list(self.tasks.values())
    return [ExternalTask.model_validate(t) for t in items]

  async def create_task(self, *, auth, list_id, task):
    self.calls.append(("create", task.payload()))
    self._maybe_fail("create")
    new_id = f"ext-{next(self._ids)}"
    body = {**task.payload(), "id": new_id, "updated": "2030-01-01T00:00:00.000Z"}
    self.tasks[new_id] = body
    return ExternalTask.model_validate(body)

  async def update_task(self, *, auth, list_id, task_id, task):
    self.calls.append(("update", task_id, task.payload()))
    self._maybe_fail("update")
    self.tasks.setdefault(task_id, {"id": task_id}).update(task.payload())
    return ExternalTask.model_validate(self.tasks[task_id])

  async def delete_task(self, *, auth, list_id, task_id):
    self.calls.append(("delete", task_id))
    self._maybe_fail("delete")
    self.tasks.pop(task_id, None)

  async def create_tasklist(self, *, auth, title):
    self.calls.append(("create_list", title))
    self._maybe_fail("create_list")
    return ExternalTaskList(id=f"list-{next(self._ids)}", title=title)

  async def delete_tasklist(self, *, auth, list_id):
    self.calls.append(("delete_list", list_id))
    self._maybe_fail("delete_list")


def ext(task_id: str | None, title: str, *, updated: str | None = None, **fields: Any) -> dict[str, Any]:
  out: dict[str, Any] = {"title": title, "status": "needsAction", **fields}
  if task_id is not None:
    out["id"] = task_id
  if updated is not None:
    out["updated"] = updated
  return out
