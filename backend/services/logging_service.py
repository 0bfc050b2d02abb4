"""
File logging and retention.

Besides the main tradeflow.log, records emitted with a workflow run context
(`extra={"workflow_id": ...}`) are copied into workflow_runs.log so a run
can be traced without the HTTP noise.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)

MAIN_LOG_FILE = "tradeflow.log"
RUN_LOG_FILE = "workflow_runs.log"

_HANDLER_NAMES = ("tradeflow_file", "tradeflow_runs_file")


class WorkflowRunFilter(logging.Filter):
    """Pass only records that carry a workflow_id."""

    def filter(self, record: logging.LogRecord) -> bool:
        return getattr(record, "workflow_id", None) is not None


def _detach(root: logging.Logger, names: Iterable[str]) -> None:
    for handler in [h for h in root.handlers if h.name in names]:
        root.removeHandler(handler)
        handler.close()


def configure_file_logging(log_directory: str, level: int = logging.INFO) -> Path:
    """
    Attach the main and workflow-run file handlers to the root logger.

    Safe to call again (e.g. after a settings reload): previously attached
    TradeFlow handlers are replaced rather than duplicated.
    """
    log_dir = Path(log_directory).expanduser().resolve()
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    _detach(root, _HANDLER_NAMES)

    formatter = logging.Formatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    main_handler = logging.FileHandler(log_dir / MAIN_LOG_FILE, encoding="utf-8")
    run_handler = logging.FileHandler(log_dir / RUN_LOG_FILE, encoding="utf-8")
    run_handler.addFilter(WorkflowRunFilter())
    for name, handler in zip(_HANDLER_NAMES, (main_handler, run_handler)):
        handler.name = name
        handler.setLevel(level)
        handler.setFormatter(formatter)
        root.addHandler(handler)

    if root.level > level:
        root.setLevel(level)
    return log_dir


def cleanup_old_files(directory: str, retention_days: int) -> int:
    """Delete regular files in `directory` not modified for `retention_days`."""
    target = Path(directory).expanduser().resolve()
    if not target.is_dir():
        return 0

    cutoff = (datetime.now() - timedelta(days=retention_days)).timestamp()
    deleted = 0
    for path in target.iterdir():
        try:
            if path.is_file() and path.stat().st_mtime < cutoff:
                path.unlink(missing_ok=True)
                deleted += 1
        except OSError:
            logger.debug("Could not prune %s", path, exc_info=True)
    return deleted
