from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from omnisync.config import settings
from omnisync.deps import get_current_user, get_db
from omnisync.metrics import sync_metrics
from omnisync.models import MemberEnrollment, Project, User

router = APIRouter(prefix="/system", tags=["system"])


@router.get("/sync")
async def sync_status(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)) -> dict:
  counts_res = await db.execute(
    select(Project.sync_status, func.count(Project.id)).where(Project.sync_enabled.is_(True)).group_by(Project.sync_status)
  )
  by_status = {str(status or "never"): int(n) for status, n in counts_res.all()}
  queue_res = await db.execute(
    select(func.count(MemberEnrollment.id)).where(MemberEnrollment.status.in_(["pending", "sending", "error"]))
  )
  return {
    "autoSyncEnabled": bool(settings.sync_auto_enabled),
    "intervalSeconds": int(settings.sync_auto_interval_seconds),
    "concurrency": int(settings.sync_concurrency),
    "projectsByStatus": by_status,
    "enrollmentBacklog": int(queue_res.scalar_one() or 0),
    "metrics": sync_metrics.snapshot(),
  }
