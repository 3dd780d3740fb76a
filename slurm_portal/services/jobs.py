"""Job listing view model."""
from __future__ import annotations

import re
from typing import Any, Iterable, List, Optional

JOB_ID_RE = re.compile(r"^\d+(_\d+)?$")

# States offered by the job table filter
JOB_STATES = ["RUNNING", "PENDING", "COMPLETED", "FAILED", "CANCELLED", "TIMEOUT"]


def is_valid_job_id(job_id: str) -> bool:
    """Job IDs are digits, optionally with an array index ("123_4")."""
    return bool(JOB_ID_RE.match(job_id or ""))


def number_value(value: Any) -> Optional[int]:
    """
    Unwrap a slurmrestd number object.

    Slurm reports numbers as {"set": bool, "infinite": bool, "number": int};
    unset or infinite values become None. Plain numbers pass through.
    """
    if isinstance(value, dict):
        if not value.get("set") or value.get("infinite"):
            return None
        return value.get("number")
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    return None


def normalize_job(job: dict) -> dict:
    """Flatten a slurmrestd job record into the fields the job table shows."""
    states = list(job.get("job_state") or [])
    return {
        "job_id": job.get("job_id"),
        "name": job.get("name", ""),
        "user": job.get("user_name", ""),
        "state": states[0] if states else "",
        "states": states,
        "partition": job.get("partition", ""),
        "account": job.get("account", ""),
        "submit_time": number_value(job.get("submit_time")),
        "start_time": number_value(job.get("start_time")),
        "time_limit": number_value(job.get("time_limit")),
        "node_count": number_value(job.get("node_count")),
        "cpus": number_value(job.get("cpus")),
        "nodes": job.get("nodes", ""),
        "tres_req": job.get("tres_req_str", ""),
        "tres_alloc": job.get("tres_alloc_str", ""),
        "gres_detail": list(job.get("gres_detail") or []),
    }


def filter_jobs(
    jobs: Iterable[dict], username: str = "", state: str = ""
) -> List[dict]:
    """
    Keep normalized jobs matching both filters.

    An empty filter matches everything; ``state`` is compared with the
    job's first state.
    """
    return [
        job
        for job in jobs
        if (not username or job["user"] == username)
        and (not state or job["state"] == state)
    ]
