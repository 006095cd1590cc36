from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from threading import Lock
from time import monotonic


@dataclass
class SyncSample:
  ts: datetime
  project_id: str
  trigger: str
  success: bool
  added: int
  updated: int
  duration_ms: float
  error: str | None = None


@dataclass
class TickSample:
  ts: datetime
  synced: int
  failed: int
  skipped: int
  duration_ms: float


class SyncMetrics:
  def __init__(self, *, max_samples: int = 500) -> None:
    self._started_monotonic = monotonic()
    self._started_at = datetime.now(timezone.utc)
    self._samples: deque[SyncSample] = deque(maxlen=max_samples)
    self._ticks: deque[TickSample] = deque(maxlen=50)
    self._lock = Lock()

  @property
  def started_at(self) -> datetime:
    return self._started_at

  def uptime_seconds(self) -> int:
    return max(0, int(monotonic() - self._started_monotonic))

  def observe_sync(
    self,
    *,
    project_id: str,
    trigger: str,
    success: bool,
    added: int,
    updated: int,
    duration_ms: float,
    error: str | None = None,
  ) -> None:
    now = datetime.now(timezone.utc)
    with self._lock:
      self._samples.append(
        SyncSample(
          ts=now,
          project_id=project_id,
          trigger=trigger,
          success=success,
          added=added,
          updated=updated,
          duration_ms=duration_ms,
          error=error,
        )
      )
      self._prune_locked(now)

  def observe_tick(self, *, synced: int, failed: int, skipped: int, duration_ms: float) -> None:
    now = datetime.now(timezone.utc)
    with self._lock:
      self._ticks.append(TickSample(ts=now, synced=synced, failed=failed, skipped=skipped, duration_ms=duration_ms))

  def _prune_locked(self, now: datetime) -> None:
    cutoff = now - timedelta(hours=24)
    while self._samples and self._samples[0].ts < cutoff:
      self._samples.popleft()

  def snapshot(self) -> dict:
    now = datetime.now(timezone.utc)
    with self._lock:
      self._prune_locked(now)
      samples = list(self._samples)
      ticks = list(self._ticks)

    failures = [s for s in samples if not s.success]
    p95_ms = 0.0
    if samples:
      sorted_durations = sorted(s.duration_ms for s in samples)
      idx = max(0, int(len(sorted_durations) * 0.95) - 1)
      p95_ms = sorted_durations[idx]

    last_tick = ticks[-1] if ticks else None
    return {
      "uptimeSeconds": self.uptime_seconds(),
      "syncCount24h": len(samples),
      "syncFailures24h": len(failures),
      "p95SyncMs24h": round(p95_ms, 2),
      "lastTick": (
        {
          "at": last_tick.ts.isoformat(),
          "synced": last_tick.synced,
          "failed": last_tick.failed,
          "skipped": last_tick.skipped,
          "durationMs": round(last_tick.duration_ms, 2),
        }
        if last_tick
        else None
      ),
      "recent": [
        {
          "at": s.ts.isoformat(),
          "projectId": s.project_id,
          "trigger": s.trigger,
          "success": s.success,
          "added": s.added,
          "updated": s.updated,
          "error": s.error,
        }
        for s in samples[-20:]
      ],
    }


sync_metrics = SyncMetrics()
