"""Pytest fixtures for slurm_portal tests."""

from datetime import timedelta
from pathlib import Path

import pytest
from flask import Flask
from flask.testing import FlaskClient

from slurm_portal.app import create_app
from slurm_portal.auth.tokens import create_token
from slurm_portal.config import Config, LdapSettings, set_config
from slurm_portal.services.sessions import get_session_store, get_token_store
from slurm_portal.services.slurm import OsUser

TEST_SECRET = "test-secret"


@pytest.fixture
def config(tmp_path: Path) -> Config:
    """Config pointing at a users file in a temporary directory."""
    users_file = tmp_path / "users.yaml"
    users_file.write_text("users: {}\n")
    cfg = Config(
        jwt_secret=TEST_SECRET,
        auth_backend="users-file",
        users_file=users_file,
        ldap=LdapSettings(search_base="dc=example,dc=org"),
        slurm_api_url="http://slurm.test:6820",
    )
    set_config(cfg)
    return cfg


@pytest.fixture
def app(config: Config) -> Flask:
    """Flask application built from the test config."""
    application = create_app(config)
    application.config["TESTING"] = True
    return application


@pytest.fixture
def client(app: Flask) -> FlaskClient:
    """Flask test client."""
    return app.test_client()


@pytest.fixture(autouse=True)
def clear_stores():
    """Start and finish every test with empty token and session stores."""
    get_token_store().clear()
    get_session_store().clear()
    yield
    get_token_store().clear()
    get_session_store().clear()


@pytest.fixture
def make_token(config: Config):
    """Factory for portal tokens signed with the test secret."""

    def _make(username: str = "alice", role: str = "user", hours: float = 1) -> str:
        return create_token(
            username, role, config.jwt_secret, config.jwt_issuer, timedelta(hours=hours)
        )

    return _make


@pytest.fixture
def auth_headers(make_token) -> dict:
    """Bearer headers for the regular user "alice"."""
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def admin_headers(make_token) -> dict:
    """Bearer headers for the admin user "root"."""
    return {"Authorization": f"Bearer {make_token('root', 'admin')}"}


@pytest.fixture
def home_user(tmp_path: Path) -> OsUser:
    """OS user "alice" whose home is a temporary directory."""
    home = tmp_path / "home" / "alice"
    home.mkdir(parents=True)
    return OsUser(name="alice", uid=1000, gid=1000, home=home)


@pytest.fixture
def sample_nodes() -> dict:
    """slurmrestd /nodes response with compute, GPU and login nodes."""
    return {
        "nodes": [
            {
                "name": "gpu02",
                "state": ["MIXED"],
                "partitions": ["gpu", "debug-gpu"],
                "cpus": 64,
                "alloc_cpus": 16,
                "gres": "gpu:a100:4",
                "gres_used": "gpu:a100:1(IDX:0)",
            },
            {
                "name": "gpu01",
                "state": ["IDLE"],
                "partitions": ["gpu"],
                "cpus": 64,
                "alloc_cpus": 0,
                "gres": "gpu:a100:4",
                "gres_used": "gpu:a100:0(IDX:N/A)",
            },
            {
                "name": "cpu01",
                "state": ["ALLOCATED"],
                "partitions": ["cpu"],
                "cpus": 32,
                "alloc_cpus": 32,
                "gres": "",
                "gres_used": "",
            },
            {
                "name": "Login01",
                "state": ["IDLE"],
                "partitions": ["cpu"],
                "cpus": 8,
                "alloc_cpus": 0,
                "gres": "",
                "gres_used": "",
            },
        ],
        "errors": [],
    }


@pytest.fixture
def sample_jobs() -> dict:
    """slurmrestd /jobs response."""
    return {
        "jobs": [
            {
                "job_id": 101,
                "name": "train",
                "user_name": "alice",
                "job_state": ["RUNNING"],
                "partition": "gpu",
                "account": "lab",
                "submit_time": {"set": True, "infinite": False, "number": 1700000000},
                "start_time": {"set": True, "infinite": False, "number": 1700000100},
                "time_limit": {"set": True, "infinite": False, "number": 60},
                "node_count": {"set": True, "infinite": False, "number": 1},
                "cpus": {"set": True, "infinite": False, "number": 8},
                "nodes": "gpu01",
                "tres_req_str": "cpu=8,gres/gpu=1",
                "tres_alloc_str": "cpu=8,gres/gpu=1",
                "gres_detail": ["gpu:a100:1(IDX:0)"],
            },
            {
                "job_id": 102,
                "name": "prep",
                "user_name": "bob",
                "job_state": ["PENDING"],
                "partition": "cpu",
                "account": "lab",
                "submit_time": {"set": True, "infinite": False, "number": 1700000200},
                "start_time": {"set": False, "infinite": False, "number": 0},
                "time_limit": {"set": True, "infinite": True, "number": 0},
                "node_count": {"set": True, "infinite": False, "number": 2},
                "cpus": {"set": True, "infinite": False, "number": 4},
                "nodes": "",
            },
            {
                "job_id": 103,
                "name": "eval",
                "user_name": "alice",
                "job_state": ["COMPLETED"],
                "partition": "gpu",
                "account": "lab",
            },
        ]
    }
