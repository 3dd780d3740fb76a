"""Generate salloc command lines and sbatch scripts from form options."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from typing import Any, List, Optional

MAIL_TYPES = ["BEGIN", "END", "FAIL"]
SCRIPT_KINDS = ["salloc", "sbatch"]

DEFAULT_JOB_NAME = "my-job"
DEFAULT_TASK_SCRIPT = "torchrun your_script.py"

TEXT_FIELDS = (
    "job_name",
    "partition",
    "run_time",
    "nodes",
    "output_file",
    "error_file",
    "work_dir",
    "mail_user",
    "task_script",
)

NODE_INFO_PREAMBLE = """# --- Node information ---
echo "SLURM_JOB_NODELIST: $SLURM_JOB_NODELIST"
nodes=( $( scontrol show hostnames $SLURM_JOB_NODELIST ) )
nodes_array=($nodes)
head_node=${nodes_array[0]}
head_node_ip=$(srun --nodes=1 --ntasks=1 -w "$head_node" hostname --ip-address)
echo "Node IP: $head_node_ip"
export LOGLEVEL=INFO

# --- Task ---"""


class ScriptOptionsError(ValueError):
    """Raised when form options cannot produce a script."""


@dataclass
class ScriptOptions:
    """Options shared by the script generator and the batch job form."""

    job_name: str = ""
    partition: str = ""
    run_time: str = ""
    nodes: str = ""
    gpu_total: Optional[int] = None
    gpu_per_node: Optional[int] = None
    tasks_per_node: Optional[int] = 1
    cpus_per_task: Optional[int] = 1
    output_file: str = ""
    error_file: str = ""
    work_dir: str = ""
    mail_type: List[str] = field(default_factory=list)
    mail_user: str = ""
    task_script: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "ScriptOptions":
        """
        Build options from a form/JSON payload.

        Blank strings count as unset. Raises ScriptOptionsError on invalid input.
        """
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                continue
            if isinstance(value, str):
                value = value.strip()
            values[key] = value

        for key in ("gpu_total", "gpu_per_node", "tasks_per_node", "cpus_per_task"):
            if key in values:
                values[key] = _positive_int(key, values[key])

        mail_type = values.get("mail_type")
        if mail_type is None:
            mail_type = []
        elif isinstance(mail_type, str):
            mail_type = [m for m in mail_type.split(",") if m]
        if not isinstance(mail_type, list) or not all(isinstance(m, str) for m in mail_type):
            raise ScriptOptionsError("mail_type must be a list of strings")
        unknown = [m for m in mail_type if m not in MAIL_TYPES]
        if unknown:
            raise ScriptOptionsError(f"Unknown mail type: {', '.join(unknown)}")
        values["mail_type"] = list(mail_type)

        for key in TEXT_FIELDS:
            if key in values:
                values[key] = "" if values[key] is None else str(values[key])

        options = cls(**values)
        if options.gpu_total and options.gpu_per_node:
            raise ScriptOptionsError("Specify either total GPUs or GPUs per node, not both")
        return options

    def node_names(self) -> List[str]:
        """Names in the comma-separated node list."""
        return [name.strip() for name in self.nodes.split(",") if name.strip()]


def _positive_int(name: str, value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        number = int(value)
    except (TypeError, ValueError) as e:
        raise ScriptOptionsError(f"{name} must be an integer") from e
    if number < 0:
        raise ScriptOptionsError(f"{name} must not be negative")
    return number or None


def build_salloc_command(options: ScriptOptions) -> str:
    """Build a ``salloc --no-shell`` command line."""
    script = "salloc --no-shell"
    if options.job_name:
        script += f" --job-name={options.job_name}"
    if options.partition:
        script += f" --partition={options.partition}"
    if options.nodes:
        script += f" --nodelist={options.nodes}"
    if options.run_time:
        script += f" --time={options.run_time}"
    if options.gpu_total:
        script += f" --gpus={options.gpu_total}"
    if options.gpu_per_node:
        script += f" --gres=gpu:{options.gpu_per_node}"
    return script


def build_sbatch_script(options: ScriptOptions) -> str:
    """Build a complete sbatch script with #SBATCH directives and an srun launch line."""
    lines = ["#!/bin/bash", f"#SBATCH --job-name={options.job_name or DEFAULT_JOB_NAME}"]

    directives = [
        ("partition", options.partition),
        ("time", options.run_time),
        ("nodelist", options.nodes),
        ("ntasks-per-node", options.tasks_per_node),
        ("cpus-per-task", options.cpus_per_task),
        ("gpus", options.gpu_total),
        ("gres", f"gpu:{options.gpu_per_node}" if options.gpu_per_node else ""),
        ("output", options.output_file),
        ("error", options.error_file),
        ("chdir", options.work_dir),
        ("mail-type", ",".join(options.mail_type)),
        ("mail-user", options.mail_user),
    ]
    for name, value in directives:
        if value:
            lines.append(f"#SBATCH --{name}={value}")

    node_count = len(options.node_names()) or 1
    srun = (
        f"srun --nodes={node_count} --ntasks-per-node={options.tasks_per_node or 1} "
        f"{options.task_script or DEFAULT_TASK_SCRIPT}"
    )
    return "\n".join(lines) + "\n\n" + NODE_INFO_PREAMBLE + "\n" + srun + "\n"


def generate_script(kind: str, data: dict) -> str:
    """Generate a script of ``kind`` ("salloc" or "sbatch") from a payload."""
    if kind not in SCRIPT_KINDS:
        raise ScriptOptionsError(f"Unknown script kind: {kind}")
    options = ScriptOptions.from_dict(data)
    if kind == "salloc":
        return build_salloc_command(options)
    return build_sbatch_script(options)
