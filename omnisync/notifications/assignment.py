from __future__ import annotations

import html
import logging
import re
from datetime import datetime
from typing import Any, Callable, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from omnisync.config import Settings, settings
from omnisync.models import NotificationLog, Project, User
from omnisync.notifications.gmail import EmailContent
from omnisync.store import TaskSnapshot

logger = logging.getLogger(__name__)

_EMAIL_RE = re.compile(r"^[^@\s<>]+@[^@\s<>]+\.[^@\s<>]+$")
PROJECT_PLACEHOLDER = "a project"
KIND = "task.assigned"


class MailTransport(Protocol):
  async def send(self, content: EmailContent) -> dict[str, Any]: ...


def looks_like_email(value: str | None) -> bool:
  return bool(value and _EMAIL_RE.match(value.strip()))


def assignee_changed(before: TaskSnapshot | None, after: TaskSnapshot) -> bool:
  new = (after.get("assignee_id") or "").strip()
  if not new:
    return False
  old = ((before or {}).get("assignee_id") or "").strip()
  return new != old


def _fmt_due(value: Any) -> str:
  if isinstance(value, datetime):
    return value.strftime("%Y-%m-%d")
  return str(value) if value else "No due date"


def render_assignment_email(*, task: TaskSnapshot, project_name: str, app_base_url: str | None = None) -> tuple[str, str]:
  """Returns (subject, html). Every task-supplied string is escaped."""
  title = task.get("title") or "Untitled"
  esc = html.escape
  description = (task.get("description") or "").strip()
  link = f"{(app_base_url or settings.app_base_url).rstrip('/')}/projects/{task.get('project_id')}"
  subject = "You were assigned: " + " ".join(str(title).split())
  body = (
    "<html><body>"
    f"<p>You have been assigned a task in <strong>{esc(project_name)}</strong>.</p>"
    f"<h2>{esc(title)}</h2>"
    + (f"<p>{esc(description)}</p>" if description else "")
    + "<ul>"
    f"<li>Priority: {esc(str(task.get('priority') or 'medium'))}</li>"
    f"<li>Due: {esc(_fmt_due(task.get('due_date')))}</li>"
    "</ul>"
    f'<p><a href="{esc(link, quote=True)}">Open the project</a></p>'
    "</body></html>"
  )
  return subject, body


class AssignmentNotifier:
  """
  Task-write listener that emails a task's new assignee.

  Never raises: every attempt ends in a NotificationLog row (or a logged failure
  to write one), and the task write that triggered it is unaffected.
  """

  def __init__(
    self,
    session_factory: Callable[[], AsyncSession],
    transport: MailTransport,
    config: Settings | None = None,
  ) -> None:
    self.session_factory = session_factory
    self.transport = transport
    self.config = config or settings

  async def __call__(self, task_id: str, before: TaskSnapshot | None, after: TaskSnapshot | None) -> None:
    try:
      await self.handle(task_id, before, after)
    except Exception:
      logger.exception("Assignment notification failed for task %s", task_id)

  async def _recipient(self, db: AsyncSession, after: TaskSnapshot) -> str | None:
    assignee_id = (after.get("assignee_id") or "").strip()
    res = await db.execute(select(User.email).where(User.id == assignee_id))
    email = res.scalar_one_or_none()
    if looks_like_email(email):
      return email.strip()
    name = after.get("assignee_name")
    if looks_like_email(name):
      return name.strip()
    return None

  async def _project_name(self, db: AsyncSession, project_id: str | None) -> str:
    try:
      res = await db.execute(select(Project.name).where(Project.id == project_id))
      return res.scalar_one_or_none() or PROJECT_PLACEHOLDER
    except Exception:
      logger.warning("Project lookup failed for %s; using placeholder", project_id, exc_info=True)
      await db.rollback()
      return PROJECT_PLACEHOLDER

  async def handle(self, task_id: str, before: TaskSnapshot | None, after: TaskSnapshot | None) -> bool:
    if after is None:
      return False
    if not assignee_changed(before, after):
      return False

    async with self.session_factory() as db:
      recipient = await self._recipient(db, after)
      if not recipient:
        logger.info("Task %s assigned to %s without a resolvable email; not notifying", task_id, after.get("assignee_id"))
        return False

      project_name = await self._project_name(db, after.get("project_id"))
      subject, body = render_assignment_email(task=after, project_name=project_name, app_base_url=self.config.app_base_url)

      success = True
      error: str | None = None
      try:
        await self.transport.send(EmailContent(to=recipient, subject=subject, html=body))
      except Exception as e:
        success = False
        error = str(e).strip() or e.__class__.__name__
        logger.warning("Assignment email to %s for task %s failed: %s", recipient, task_id, error)

      try:
        db.add(NotificationLog(task_id=task_id, kind=KIND, recipient=recipient, success=success, error=error))
        await db.commit()
      except Exception:
        logger.exception("Could not record notification for task %s", task_id)
    return success
