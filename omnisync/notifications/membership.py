from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from omnisync.audit import write_audit
from omnisync.models import MemberEnrollment, Project, User

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 5


async def enqueue_member_enrollment(
  db: AsyncSession,
  *,
  project: Project,
  user_id: str | None,
  task_id: str | None = None,
) -> MemberEnrollment | None:
  """
  Queue "add user to project" when an assignee is not yet on the project.

  Added to the caller's transaction; does nothing for unknown users, the owner,
  existing members, or a user that already has an open enrollment here.
  """
  uid = (user_id or "").strip()
  if not uid or project.has_access(uid):
    return None
  ures = await db.execute(select(User.id).where(User.id == uid))
  if ures.scalar_one_or_none() is None:
    return None
  res = await db.execute(
    select(MemberEnrollment.id).where(
      MemberEnrollment.project_id == project.id,
      MemberEnrollment.user_id == uid,
      MemberEnrollment.status.in_(["pending", "sending", "error"]),
    )
  )
  if res.first():
    return None
  job = MemberEnrollment(project_id=project.id, user_id=uid, task_id=task_id, status="pending")
  db.add(job)
  return job


async def process_member_enrollments_once(db: AsyncSession, *, now: datetime | None = None, limit: int = 50) -> int:
  """
  Apply queued enrollments.

  - Jobs are claimed with a status transition, so concurrent workers never apply one twice.
  - A failed job is left in `error` with its message and retried until MAX_ATTEMPTS.
  """
  now = now or datetime.now(timezone.utc)

  res = await db.execute(
    select(MemberEnrollment)
    .where(MemberEnrollment.status.in_(["pending", "error"]), MemberEnrollment.attempts < MAX_ATTEMPTS)
    .order_by(MemberEnrollment.created_at.asc())
    .limit(int(limit))
  )
  jobs = res.scalars().all()
  if not jobs:
    return 0

  done = 0
  for job in jobs:
    claim = await db.execute(
      update(MemberEnrollment)
      .where(MemberEnrollment.id == job.id, MemberEnrollment.status.in_(["pending", "error"]))
      .values(status="sending", attempts=MemberEnrollment.attempts + 1, last_attempt_at=now, last_error=None)
      .execution_options(synchronize_session=False)
    )
    await db.commit()
    if claim.rowcount == 0:
      continue

    try:
      pres = await db.execute(select(Project).where(Project.id == job.project_id).execution_options(populate_existing=True))
      project = pres.scalar_one_or_none()
      if not project:
        raise LookupError(f"Project {job.project_id} no longer exists")
      members = list(project.member_ids or [])
      if job.user_id not in members and job.user_id != project.owner_id:
        project.member_ids = members + [job.user_id]
      await db.execute(
        update(MemberEnrollment)
        .where(MemberEnrollment.id == job.id)
        .values(status="done", done_at=now)
        .execution_options(synchronize_session=False)
      )
      await write_audit(
        db,
        event_type="project.member.enrolled",
        entity_type="Project",
        entity_id=job.project_id,
        project_id=job.project_id,
        task_id=job.task_id,
        actor_id=None,
        payload={"userId": job.user_id},
      )
      await db.commit()
      done += 1
    except Exception as e:
      await db.rollback()
      logger.warning("Member enrollment %s failed: %s", job.id, e)
      await db.execute(
        update(MemberEnrollment)
        .where(MemberEnrollment.id == job.id)
        .values(status="error", last_error=str(e))
        .execution_options(synchronize_session=False)
      )
      await db.commit()

  return done
