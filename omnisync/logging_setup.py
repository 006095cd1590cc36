from __future__ import annotations

import logging
import sys
from pathlib import Path

_configured = False


class _ConsoleNoiseFilter(logging.Filter):
  """Keep omnisync and uvicorn logs; other libraries only at WARNING and above."""

  def filter(self, record: logging.LogRecord) -> bool:
    name = record.name
    if name.startswith("omnisync.") or name.startswith("uvicorn"):
      return True
    if name == "py.warnings":
      return record.levelno >= logging.ERROR
    return record.levelno >= logging.WARNING


def setup_logging(*, level: str | int = "INFO", log_dir: str | Path | None = None) -> None:
  """
  Console handler always; a file handler with full DEBUG output when `log_dir` is set.

  Safe to call more than once; only the first call configures handlers.
  """
  global _configured
  if _configured:
    return
  _configured = True

  console_level = logging.getLevelName(level.upper()) if isinstance(level, str) else level
  if not isinstance(console_level, int):
    console_level = logging.INFO

  root = logging.getLogger()
  root.setLevel(logging.DEBUG if log_dir else console_level)

  fmt = logging.Formatter(
    fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
  )

  ch = logging.StreamHandler(sys.stderr)
  ch.setLevel(console_level)
  ch.setFormatter(fmt)
  ch.addFilter(_ConsoleNoiseFilter())
  root.addHandler(ch)

  if log_dir:
    path = Path(log_dir)
    path.mkdir(parents=True, exist_ok=True)
    fh = logging.FileHandler(str(path / "omnisync.log"), encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(fmt)
    root.addHandler(fh)

  logging.captureWarnings(True)
