from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from omnisync.config import settings
from omnisync.deps import get_current_user, get_db, get_dispatcher, require_project_access
from omnisync.models import User
from omnisync.schemas import ManualSyncIn, SyncResultOut
from omnisync.store import TaskWriteDispatcher
from omnisync.sync.service import sync_project
from omnisync.tasks_api.oauth import resolve_interactive

logger = logging.getLogger(__name__)

router = APIRouter(tags=["sync"])


@router.post("/projects/{project_id}/sync", response_model=SyncResultOut)
async def manual_sync(
  project_id: str,
  payload: ManualSyncIn,
  user: User = Depends(get_current_user),
  db: AsyncSession = Depends(get_db),
  dispatcher: TaskWriteDispatcher = Depends(get_dispatcher),
) -> SyncResultOut:
  access_token = resolve_interactive(payload.accessToken)
  await require_project_access(project_id, user, db)
  logger.info("Manual sync of project %s requested by %s", project_id, user.id)
  result = await sync_project(
    db,
    project_id=project_id,
    access_token=access_token,
    timeout_seconds=settings.sync_timeout_seconds,
    dispatcher=dispatcher,
    trigger="manual",
  )
  return SyncResultOut(success=result.success, added=result.added, updated=result.updated, error=result.error)
