"""Slurm command wrappers run on behalf of portal users."""
from __future__ import annotations

import logging
import os
import pwd
import re
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

logger = logging.getLogger(__name__)

SUBMITTED_RE = re.compile(r"Submitted batch job (\d+)")


class SlurmCommandError(Exception):
    """Raised when a Slurm command cannot be run or fails."""

    def __init__(self, message: str, output: str = ""):
        self.output = output
        super().__init__(message)


class SbatchOutputError(SlurmCommandError):
    """Raised when sbatch succeeded but printed no job ID."""


@dataclass
class OsUser:
    """Account details needed to run commands as a user."""

    name: str
    uid: int
    gid: int
    home: Path


def lookup_user(username: str) -> OsUser:
    """Resolve a username to its OS account."""
    try:
        entry = pwd.getpwnam(username)
    except KeyError as e:
        raise SlurmCommandError(f"Failed to lookup user {username}") from e
    return OsUser(name=username, uid=entry.pw_uid, gid=entry.pw_gid, home=Path(entry.pw_dir))


def user_environment(user: OsUser) -> Dict[str, str]:
    """Minimal environment for processes started as ``user``."""
    return {
        "TERM": "xterm",
        "HOME": str(user.home),
        "USER": user.name,
        "LOGNAME": user.name,
        "PATH": os.environ.get("PATH", "/usr/bin:/bin"),
    }


def run_as_user(username: str, cmd: List[str], timeout: int = 30) -> str:
    """
    Run a command as ``username`` from their home directory.

    Returns combined stdout/stderr. Raises SlurmCommandError on failure.
    """
    user = lookup_user(username)
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout,
            cwd=str(user.home),
            env=user_environment(user),
            user=user.uid,
            group=user.gid,
            check=False,
        )
    except FileNotFoundError as e:
        raise SlurmCommandError(f"{cmd[0]} command not found") from e
    except subprocess.TimeoutExpired as e:
        raise SlurmCommandError(f"{cmd[0]} timed out") from e
    except (PermissionError, subprocess.SubprocessError) as e:
        raise SlurmCommandError(f"Failed to execute command as user {username}: {e}") from e

    if proc.returncode != 0:
        raise SlurmCommandError(
            f"Failed to execute command as user {username}: exit code {proc.returncode}",
            output=proc.stdout,
        )
    return proc.stdout


def get_slurm_token(username: str, lifespan: int) -> str:
    """Mint a Slurm JWT for ``username`` with ``scontrol token``."""
    try:
        proc = subprocess.run(
            ["scontrol", "token", f"username={username}", f"lifespan={lifespan}"],
            capture_output=True,
            text=True,
            timeout=10,
            check=False,
        )
    except FileNotFoundError as e:
        raise SlurmCommandError("scontrol command not found") from e
    except subprocess.TimeoutExpired as e:
        raise SlurmCommandError("scontrol timed out") from e

    output = (proc.stdout + proc.stderr).strip()
    if proc.returncode != 0:
        raise SlurmCommandError(f"scontrol command failed: {output}", output=output)
    if output.startswith("SLURM_JWT="):
        return output[len("SLURM_JWT="):]
    raise SlurmCommandError(f"unexpected output from scontrol: {output}", output=output)


def get_user_groups(username: str) -> List[str]:
    """Groups of ``username`` as reported by ``groups``."""
    try:
        proc = subprocess.run(
            ["groups", username],
            capture_output=True,
            text=True,
            timeout=5,
            check=False,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        raise SlurmCommandError(f"Could not check groups for user {username}") from e
    if proc.returncode != 0:
        raise SlurmCommandError(f"Could not check groups for user {username}", output=proc.stderr)
    return parse_groups_output(proc.stdout)


def parse_groups_output(output: str) -> List[str]:
    """Parse ``groups`` output ('user : g1 g2' or plain 'g1 g2')."""
    _, sep, rest = output.partition(":")
    groups_str = rest if sep else output
    return groups_str.split()


def submit_batch_script(username: str, script: str) -> str:
    """
    Submit a batch script with sbatch as ``username``.

    The script is written to a temporary file that is removed afterwards.
    Returns the new job ID.
    """
    temp_script = tempfile.NamedTemporaryFile(
        mode="w",
        prefix="slurm-portal-",
        suffix=".sh",
        delete=False,
    )
    try:
        temp_script.write(script)
        temp_script.close()
        os.chmod(temp_script.name, 0o755)
        logger.info("Created temporary script %s for user %s", temp_script.name, username)

        output = run_as_user(username, ["sbatch", temp_script.name])
    finally:
        if os.path.exists(temp_script.name):
            os.unlink(temp_script.name)

    match = SUBMITTED_RE.search(output)
    if not match:
        raise SbatchOutputError("Failed to parse Job ID from sbatch output", output=output)
    return match.group(1)


def get_partition_info() -> str:
    """Raw ``scontrol show partition`` output."""
    try:
        proc = subprocess.run(
            ["scontrol", "show", "partition"],
            capture_output=True,
            text=True,
            timeout=10,
            check=False,
        )
    except (FileNotFoundError, subprocess.TimeoutExpired) as e:
        raise SlurmCommandError("Failed to get partition info") from e
    if proc.returncode != 0:
        raise SlurmCommandError("Failed to get partition info", output=proc.stderr)
    return proc.stdout


def get_user_accounts(username: str) -> List[str]:
    """Accounts ``username`` is associated with, via sacctmgr."""
    output = run_as_user(
        username,
        ["sacctmgr", "-nP", "show", "associations", "where", f"user={username}", "format=Account"],
    )
    return parse_lines(output)


def parse_lines(output: str) -> List[str]:
    """Split command output into stripped, non-empty lines."""
    return [line.strip() for line in output.splitlines() if line.strip()]


def build_salloc_args(
    task_name: Optional[str] = None,
    partition: Optional[str] = None,
    gpu_count: int = 0,
    cpu_count: int = 0,
    time_limit: Optional[str] = None,
    nodelist: Optional[str] = None,
) -> List[str]:
    """Command line for an interactive salloc session."""
    cmd = ["salloc", "--ntasks-per-node", "1"]
    if task_name:
        cmd.extend(["--job-name", task_name])
    if partition:
        cmd.extend(["--partition", partition])
    if gpu_count > 0:
        cmd.extend(["--gpus", str(gpu_count)])
    if cpu_count > 0:
        cmd.extend(["--cpus-per-task", str(cpu_count)])
    if time_limit:
        cmd.extend(["--time", time_limit])
    if nodelist:
        cmd.extend(["--nodelist", nodelist])
    return cmd
