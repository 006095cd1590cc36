from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy import select

from omnisync.db import SessionLocal
from omnisync.models import NotificationLog
from omnisync.notifications.assignment import AssignmentNotifier, assignee_changed, render_assignment_email
from omnisync.notifications.gmail import EmailContent, GmailSendError
from omnisync.store import task_write_dispatcher

from conftest import api_headers, create_project, create_task, create_user
from fakes import FakeTasksApi

pytestmark = pytest.mark.anyio


class RecordingTransport:
  def __init__(self, fail: Exception | None = None) -> None:
    self.sent: list[EmailContent] = []
    self.fail = fail

  async def send(self, content: EmailContent) -> dict[str, Any]:
    if self.fail is not None:
      raise self.fail
    self.sent.append(content)
    return {"id": f"msg-{len(self.sent)}"}


def _snap(**fields: Any) -> dict[str, Any]:
  base = {"id": "t1", "project_id": "p1", "title": "Task", "description": "", "priority": "medium", "due_date": None}
  return {**base, **fields}


async def _logs() -> list[NotificationLog]:
  async with SessionLocal() as db:
    res = await db.execute(select(NotificationLog))
    return list(res.scalars().all())


async def test_render_escapes_task_content() -> None:
  subject, body = render_assignment_email(
    task=_snap(title="<script>alert(1)</script>", description="a & b"),
    project_name="<b>Launch</b>",
    app_base_url="https://app.example.com/",
  )
  assert "<script>" not in body
  assert "&lt;script&gt;alert(1)&lt;/script&gt;" in body
  assert "&lt;b&gt;Launch&lt;/b&gt;" in body
  assert "a &amp; b" in body
  assert 'href="https://app.example.com/projects/p1"' in body
  assert subject == "You were assigned: <script>alert(1)</script>"


async def test_subject_never_spans_lines() -> None:
  subject, _ = render_assignment_email(task=_snap(title="Line one\r\nBcc: x@example.com"), project_name="P")
  assert "\n" not in subject and "\r" not in subject


async def test_assignee_changed() -> None:
  assert assignee_changed(None, _snap(assignee_id="u1"))
  assert assignee_changed(_snap(assignee_id="u1"), _snap(assignee_id="u2"))
  assert not assignee_changed(_snap(assignee_id="u1"), _snap(assignee_id="u1"))
  assert not assignee_changed(_snap(assignee_id="u1"), _snap(assignee_id=None))
  assert not assignee_changed(None, _snap(assignee_id="  "))


async def test_new_assignee_gets_one_email_and_a_log() -> None:
  owner = await create_user("owner@example.com")
  dev = await create_user("dev@example.com")
  p = await create_project(owner, name="Launch")
  transport = RecordingTransport()
  notifier = AssignmentNotifier(SessionLocal, transport)

  sent = await notifier.handle("t1", _snap(assignee_id=None), _snap(project_id=p.id, assignee_id=dev.id, title="Fix"))

  assert sent is True
  assert [m.to for m in transport.sent] == ["dev@example.com"]
  assert "Launch" in transport.sent[0].html
  logs = await _logs()
  assert [(l.task_id, l.kind, l.recipient, l.success) for l in logs] == [("t1", "task.assigned", "dev@example.com", True)]


async def test_unchanged_assignee_or_deletion_sends_nothing() -> None:
  dev = await create_user("dev@example.com")
  transport = RecordingTransport()
  notifier = AssignmentNotifier(SessionLocal, transport)

  assert await notifier.handle("t1", _snap(assignee_id=dev.id), _snap(assignee_id=dev.id, description="edited")) is False
  assert await notifier.handle("t1", _snap(assignee_id=dev.id), None) is False
  assert transport.sent == []
  assert await _logs() == []


async def test_missing_project_uses_placeholder_name() -> None:
  dev = await create_user("dev@example.com")
  transport = RecordingTransport()
  await AssignmentNotifier(SessionLocal, transport).handle("t1", None, _snap(project_id="gone", assignee_id=dev.id))
  assert "a project" in transport.sent[0].html


async def test_email_shaped_assignee_name_is_used_as_fallback() -> None:
  transport = RecordingTransport()
  notifier = AssignmentNotifier(SessionLocal, transport)

  await notifier.handle("t1", None, _snap(assignee_id="ext-user", assignee_name="guest@example.com"))
  assert await notifier.handle("t2", None, _snap(assignee_id="ext-user", assignee_name="Guest")) is False

  assert [m.to for m in transport.sent] == ["guest@example.com"]


async def test_failed_send_is_logged_and_never_raised() -> None:
  dev = await create_user("dev@example.com")
  transport = RecordingTransport(fail=GmailSendError("Gmail send failed (500)", status_code=500))
  notifier = AssignmentNotifier(SessionLocal, transport)

  await notifier("t1", None, _snap(assignee_id=dev.id))

  logs = await _logs()
  assert len(logs) == 1
  assert logs[0].success is False
  assert "500" in (logs[0].error or "")


async def test_assignment_through_the_api_triggers_the_notifier(client, monkeypatch) -> None:
  FakeTasksApi().install(monkeypatch)
  owner = await create_user("owner@example.com")
  dev = await create_user("dev@example.com")
  p = await create_project(owner, list_id=None, sync_enabled=False, member_ids=[dev.id])
  t = await create_task(p, title="Review")
  transport = RecordingTransport()
  task_write_dispatcher.add_listener(AssignmentNotifier(SessionLocal, transport))
  headers = await api_headers(owner)

  r = await client.patch(f"/tasks/{t.id}", json={"assigneeId": dev.id}, headers=headers)
  assert r.status_code == 200
  await task_write_dispatcher.drain()
  r = await client.patch(f"/tasks/{t.id}", json={"description": "more detail"}, headers=headers)
  assert r.status_code == 200
  await task_write_dispatcher.drain()

  assert [m.to for m in transport.sent] == ["dev@example.com"]
  assert "Review" in transport.sent[0].subject
