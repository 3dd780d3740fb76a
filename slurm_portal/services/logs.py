"""Per-job log files kept in users' home directories."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, Optional

from slurm_portal.config import LogPattern

logger = logging.getLogger(__name__)

# Log files larger than this are truncated to their tail
MAX_LOG_BYTES = 200_000


def safe_log_path(home: Path, log_pattern: LogPattern, job_id: str) -> Optional[Path]:
    """
    Resolve a job's log path, refusing paths that escape ``home``.

    Returns None if the resolved path lies outside the home directory.
    """
    target = log_pattern.format_path(home, job_id)

    # Resolve both paths to handle symlinks
    try:
        target.relative_to(home.resolve())
    except ValueError:
        return None
    return target


def read_log(path: Path, max_bytes: int = MAX_LOG_BYTES) -> str:
    """Read a log file, keeping only the last ``max_bytes`` bytes."""
    with path.open("rb") as handle:
        handle.seek(0, 2)
        size = handle.tell()
        handle.seek(max(size - max_bytes, 0))
        data = handle.read()
    return data.decode("utf-8", errors="replace")


def read_job_log(home: Path, log_pattern: LogPattern, job_id: str) -> Optional[str]:
    """
    Read one job's log.

    Returns None if the log does not exist. Other OS errors propagate.
    """
    path = safe_log_path(home, log_pattern, job_id)
    if path is None or not path.is_file():
        return None
    logger.debug("Reading job log %s", path)
    return read_log(path)


def collect_job_logs(home: Path, log_pattern: LogPattern) -> Dict[str, str]:
    """
    Collect every log matching ``log_pattern`` under ``home``.

    Returns a mapping of job ID to log content. Files that cannot be read
    map to an error message instead. A missing log directory yields {}.
    """
    log_dir = log_pattern.directory(home)
    if not log_dir.is_dir():
        logger.debug("Log directory not found: %s", log_dir)
        return {}

    infos: Dict[str, str] = {}
    for log_file in sorted(log_dir.glob(log_pattern.to_glob_pattern())):
        if not log_file.is_file():
            continue
        job_id = log_pattern.extract_job_id(log_file.name)
        if not job_id:
            continue
        try:
            infos[job_id] = read_log(log_file)
        except OSError as e:
            logger.warning("Failed to read log file %s: %s", log_file, e)
            infos[job_id] = f"Error reading file: {e}"
    return infos
