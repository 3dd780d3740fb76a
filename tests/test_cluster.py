"""Tests for slurm_portal.services.cluster module."""

from slurm_portal.services.cluster import (
    allowed_partitions,
    build_cluster_status,
    is_hidden_node,
    parse_gres,
    parse_partition_access,
)

SCONTROL_PARTITIONS = """PartitionName=cpu
   AllowGroups=ALL AllowAccounts=ALL AllowQos=ALL
   AllocNodes=ALL Default=YES QoS=N/A
   Nodes=cpu[01-04]

PartitionName=gpu
   AllowGroups=ALL AllowAccounts=lab,ml AllowQos=normal
   Nodes=gpu[01-02]

PartitionName=private
   AllowGroups=admins AllowAccounts=ops AllowQos=ALL
   Nodes=gpu02
"""


class TestParseGres:
    """Tests for GRES parsing."""

    def test_typed_gpus(self) -> None:
        """Test typed GPU entries with used index suffixes."""
        assert parse_gres("gpu:a100:4", "gpu:a100:1(IDX:0)") == [
            {"type": "a100", "total": 4, "allocated": 1, "available": 3}
        ]

    def test_untyped_gpus(self) -> None:
        """Test gpu:<n> entries use the generic type."""
        assert parse_gres("gpu:2", "gpu:2") == [
            {"type": "gpu", "total": 2, "allocated": 2, "available": 0}
        ]

    def test_multiple_types_sorted(self) -> None:
        """Test several GPU types are summed per type and sorted."""
        gpus = parse_gres("gpu:v100:2,gpu:a100:4,gres/gpu:a100:2", "gpu:a100:3(IDX:0-2),gpu:v100:0")
        assert [g["type"] for g in gpus] == ["a100", "v100"]
        assert gpus[0] == {"type": "a100", "total": 6, "allocated": 3, "available": 3}
        assert gpus[1] == {"type": "v100", "total": 2, "allocated": 0, "available": 2}

    def test_ignores_other_gres(self) -> None:
        """Test non-GPU and unparsable entries are skipped."""
        assert parse_gres("shard:8,gpu:a100:many", "") == []
        assert parse_gres("", "") == []
        assert parse_gres(None, None) == []


class TestHiddenNodes:
    """Tests for hidden node matching."""

    def test_case_insensitive_substring(self) -> None:
        """Test keywords match anywhere in the name regardless of case."""
        assert is_hidden_node("Login01", ["login"])
        assert is_hidden_node("webapp-1", ["app"])
        assert not is_hidden_node("gpu01", ["login", "portal", "app"])


class TestBuildClusterStatus:
    """Tests for the cluster status payload."""

    def test_nodes_and_partitions(self, sample_nodes: dict) -> None:
        """Test nodes are summarized and partitions derived from membership."""
        status = build_cluster_status(sample_nodes, ["login"])
        names = [n["name"] for n in status["nodes"]]
        assert "Login01" not in names
        assert status["partitions"] == [
            {"name": "cpu", "nodes": ["cpu01"]},
            {"name": "debug-gpu", "nodes": ["gpu02"]},
            {"name": "gpu", "nodes": ["gpu01", "gpu02"]},
        ]
        gpu02 = next(n for n in status["nodes"] if n["name"] == "gpu02")
        assert gpu02["total_cpus"] == 64
        assert gpu02["allocated_cpus"] == 16
        assert gpu02["available_cpus"] == 48
        assert gpu02["gpus"] == [{"type": "a100", "total": 4, "allocated": 1, "available": 3}]
        assert status["errors"] == []

    def test_allowed_partitions_drop_debug(self, sample_nodes: dict) -> None:
        """Test partition filtering also removes debug partitions."""
        status = build_cluster_status(sample_nodes, [], ["gpu", "debug-gpu"])
        assert [p["name"] for p in status["partitions"]] == ["gpu"]
        cpu01 = next(n for n in status["nodes"] if n["name"] == "cpu01")
        assert cpu01["partitions"] == []

    def test_errors_passed_through(self) -> None:
        """Test upstream errors are reported as strings."""
        status = build_cluster_status({"nodes": [], "errors": ["slurmctld down"]})
        assert status == {"partitions": [], "nodes": [], "errors": ["slurmctld down"]}


class TestPartitionAccess:
    """Tests for partition access checks."""

    def test_parse_partition_access(self) -> None:
        """Test allow lists are read per partition."""
        access = parse_partition_access(SCONTROL_PARTITIONS)
        assert set(access) == {"cpu", "gpu", "private"}
        assert access["cpu"]["allow_accounts"] == ["ALL"]
        assert access["gpu"]["allow_accounts"] == ["lab", "ml"]
        assert access["gpu"]["allow_qos"] == ["normal"]
        assert access["private"]["allow_groups"] == ["admins"]

    def test_allowed_partitions(self) -> None:
        """Test open partitions and account matches are allowed, sorted."""
        access = parse_partition_access(SCONTROL_PARTITIONS)
        assert allowed_partitions(access, ["ml"]) == ["cpu", "gpu"]
        assert allowed_partitions(access, ["ops"]) == ["cpu", "private"]
        assert allowed_partitions(access, []) == ["cpu"]
