from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from time import monotonic
from typing import Callable

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from omnisync.config import settings
from omnisync.errors import NoRefreshCredential, SyncInProgress, TokenExchangeFailed
from omnisync.metrics import sync_metrics
from omnisync.store import TaskStore, TaskWriteDispatcher
from omnisync.sync.service import sync_project
from omnisync.tasks_api.oauth import CredentialProvider

logger = logging.getLogger(__name__)


@dataclass
class SchedulerTally:
  synced: int = 0
  failed: int = 0
  skipped: int = 0


async def run_scheduled_sync_once(
  session_factory: Callable[[], AsyncSession],
  *,
  concurrency: int | None = None,
  timeout: float | None = None,
  dispatcher: TaskWriteDispatcher | None = None,
  token_transport: httpx.AsyncBaseTransport | None = None,
) -> SchedulerTally:
  """
  One scheduler tick: every sync-enabled project gets exactly one attempt.

  A project whose owner has no usable refresh credential counts as failed and
  does not stop the others. Projects whose claim is held elsewhere are skipped.
  """
  started = monotonic()
  async with session_factory() as db:
    projects = await TaskStore(db).list_sync_enabled_projects()
    targets = [(p.id, p.owner_id) for p in projects]
  logger.info("Scheduled sync tick: %d projects with sync enabled", len(targets))

  tally = SchedulerTally()
  credentials = CredentialProvider(transport=token_transport)
  sem = asyncio.Semaphore(max(1, concurrency or settings.sync_concurrency))

  async def _one(project_id: str, owner_id: str) -> None:
    async with sem:
      async with session_factory() as db:
        try:
          access_token = await credentials.resolve_scheduled(db, owner_id)
        except (NoRefreshCredential, TokenExchangeFailed) as e:
          logger.warning("Skipping project %s: credential for owner %s unavailable: %s", project_id, owner_id, e)
          tally.failed += 1
          return
        except Exception:
          logger.exception("Credential lookup failed for project %s (owner %s)", project_id, owner_id)
          tally.failed += 1
          return
        try:
          result = await sync_project(
            db,
            project_id=project_id,
            access_token=access_token,
            timeout_seconds=timeout,
            dispatcher=dispatcher,
            trigger="scheduled",
          )
        except SyncInProgress:
          logger.info("Project %s already syncing; skipped this tick", project_id)
          tally.skipped += 1
          return
        except Exception:
          logger.exception("Error syncing project %s", project_id)
          tally.failed += 1
          return
        if result.success:
          tally.synced += 1
        else:
          tally.failed += 1

  await asyncio.gather(*[_one(pid, oid) for pid, oid in targets])

  sync_metrics.observe_tick(
    synced=tally.synced,
    failed=tally.failed,
    skipped=tally.skipped,
    duration_ms=(monotonic() - started) * 1000,
  )
  logger.info("Sync complete: %d succeeded, %d failed, %d skipped", tally.synced, tally.failed, tally.skipped)
  return tally
