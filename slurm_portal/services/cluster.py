"""Cluster status view model: nodes, partitions and GPU usage."""
from __future__ import annotations

from typing import Dict, Iterable, List, Optional, Set


def _parse_gpu_entry(entry: str) -> Optional[tuple[str, int]]:
    """
    Parse one GRES entry into (type, count).

    Accepts "gpu:4", "gpu:a100:4", "gres/gpu:a100:4" and used entries
    with an index suffix like "gpu:a100:1(IDX:0)".
    """
    entry = entry.strip()
    if not (entry.startswith("gpu:") or entry.startswith("gres/gpu:")):
        return None

    paren = entry.find("(")
    if paren != -1:
        entry = entry[:paren]

    parts = entry.split(":")
    if len(parts) < 2:
        return None

    gpu_type = "gpu"
    count_str = parts[1]
    if len(parts) > 2:
        gpu_type = parts[1]
        count_str = parts[2]

    try:
        return gpu_type, int(count_str)
    except ValueError:
        return None


def parse_gres(gres: str, gres_used: str) -> List[dict]:
    """
    Summarize GPU totals and allocations from node GRES strings.

    Args:
        gres: Configured GRES, e.g. "gpu:A100:4,gpu:V100:2"
        gres_used: Used GRES, e.g. "gpu:A100:1(IDX:0),gpu:V100:0"

    Returns:
        List of {type, total, allocated, available} sorted by type
    """
    gpus: Dict[str, dict] = {}

    for field_name, source in (("total", gres), ("allocated", gres_used)):
        for part in (source or "").split(","):
            parsed = _parse_gpu_entry(part)
            if parsed is None:
                continue
            gpu_type, count = parsed
            info = gpus.setdefault(
                gpu_type, {"type": gpu_type, "total": 0, "allocated": 0, "available": 0}
            )
            info[field_name] += count

    for info in gpus.values():
        info["available"] = info["total"] - info["allocated"]
    return [gpus[name] for name in sorted(gpus)]


def is_hidden_node(name: str, hidden_keywords: Iterable[str]) -> bool:
    """True if the node name contains any hidden keyword (case-insensitive)."""
    lowered = str(name).lower()
    return any(keyword.lower() in lowered for keyword in hidden_keywords)


def build_cluster_status(
    nodes_data: dict,
    hidden_keywords: Iterable[str] = (),
    allowed_partitions: Optional[Iterable[str]] = None,
) -> dict:
    """
    Build the cluster status payload from a slurmrestd /nodes response.

    Args:
        nodes_data: Decoded slurmrestd nodes response
        hidden_keywords: Nodes whose name contains one of these are omitted
        allowed_partitions: If given, only these partitions are shown
            (partitions starting with "debug" are always dropped then)

    Returns:
        Dict with "partitions", "nodes" and "errors"
    """
    hidden_keywords = list(hidden_keywords)
    allowed: Optional[Set[str]] = None
    if allowed_partitions is not None:
        allowed = {p for p in allowed_partitions if not p.startswith("debug")}

    partition_nodes: Dict[str, Set[str]] = {}
    nodes = []

    for node in nodes_data.get("nodes") or []:
        name = node.get("name", "")
        if is_hidden_node(name, hidden_keywords):
            continue

        node_partitions = list(node.get("partitions") or [])
        if allowed is not None:
            node_partitions = [p for p in node_partitions if p in allowed]

        for partition in node_partitions:
            partition_nodes.setdefault(partition, set()).add(name)

        total_cpus = int(node.get("cpus") or 0)
        allocated_cpus = int(node.get("alloc_cpus") or 0)
        nodes.append(
            {
                "name": name,
                "state": list(node.get("state") or []),
                "partitions": node_partitions,
                "total_cpus": total_cpus,
                "allocated_cpus": allocated_cpus,
                "available_cpus": total_cpus - allocated_cpus,
                "gpus": parse_gres(node.get("gres", ""), node.get("gres_used", "")),
            }
        )

    partitions = [
        {"name": name, "nodes": sorted(members)}
        for name, members in sorted(partition_nodes.items())
    ]
    errors = [str(err) for err in nodes_data.get("errors") or []]
    return {"partitions": partitions, "nodes": nodes, "errors": errors}


def parse_partition_access(output: str) -> Dict[str, dict]:
    """
    Parse ``scontrol show partition`` output.

    Returns a mapping of partition name to its allow lists::

        {"gpu": {"allow_groups": ["ALL"], "allow_accounts": ["lab"], "allow_qos": ["ALL"]}}
    """
    partitions: Dict[str, dict] = {}
    current: Optional[dict] = None

    for line in output.splitlines():
        for item in line.split():
            key, sep, value = item.partition("=")
            if not sep:
                continue
            if key == "PartitionName":
                current = {"allow_groups": [], "allow_accounts": [], "allow_qos": []}
                partitions[value] = current
            elif current is not None and key in ("AllowGroups", "AllowAccounts", "AllowQos"):
                field_name = {
                    "AllowGroups": "allow_groups",
                    "AllowAccounts": "allow_accounts",
                    "AllowQos": "allow_qos",
                }[key]
                current[field_name] = value.split(",")

    return partitions


def allowed_partitions(partition_access: Dict[str, dict], user_accounts: Iterable[str]) -> List[str]:
    """Partitions open to all accounts or to one of ``user_accounts``."""
    accounts = set(user_accounts)
    allowed = []
    for name, access in partition_access.items():
        allow_accounts = access.get("allow_accounts") or []
        if allow_accounts == ["ALL"] or accounts.intersection(allow_accounts):
            allowed.append(name)
    return sorted(allowed)
