"""REST API routes for Slurm Portal."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional, Tuple

from flask import Blueprint, Response, g, jsonify, request

from slurm_portal.auth.backends import AuthBackendError, get_authenticator, resolve_role
from slurm_portal.auth.decorators import admin_required, token_required
from slurm_portal.auth.tokens import create_token
from slurm_portal.config import get_config
from slurm_portal.services.cluster import (
    allowed_partitions,
    build_cluster_status,
    parse_partition_access,
)
from slurm_portal.services.jobs import filter_jobs, is_valid_job_id, normalize_job
from slurm_portal.services.logs import collect_job_logs, read_job_log
from slurm_portal.services.scripts import ScriptOptionsError, generate_script
from slurm_portal.services.sessions import (
    get_session_store,
    get_token_store,
    start_interactive_session,
)
from slurm_portal.services.slurm import (
    SbatchOutputError,
    SlurmCommandError,
    build_salloc_args,
    get_partition_info,
    get_slurm_token,
    get_user_accounts,
    lookup_user,
    submit_batch_script,
)
from slurm_portal.services.slurmrest import SlurmAPIError, SlurmRestClient

logger = logging.getLogger(__name__)

api = Blueprint("api", __name__, url_prefix="/api")

SESSION_NOT_FOUND = "Slurm session not found, please login again."


def slurm_client() -> Optional[SlurmRestClient]:
    """slurmrestd client for the current user, or None without a Slurm token."""
    token = get_token_store().get(g.username)
    if token is None:
        return None
    config = get_config()
    return SlurmRestClient(
        config.slurm_api_base, g.username, token, timeout=config.request_timeout
    )


def proxy_response(resp) -> Response:
    """Relay a slurmrestd response's status and body unchanged."""
    return Response(
        resp.content,
        status=resp.status_code,
        content_type=resp.headers.get("Content-Type", "application/json"),
    )


def user_partitions(username: str) -> list[str]:
    """Partitions ``username`` may submit to."""
    access = parse_partition_access(get_partition_info())
    return allowed_partitions(access, get_user_accounts(username))


def parse_count(data: dict, key: str) -> Tuple[int, Optional[str]]:
    """Read a non-negative integer field; returns (value, error)."""
    value = data.get(key) or 0
    try:
        count = int(value)
    except (TypeError, ValueError):
        return 0, f"{key} must be an integer"
    if count < 0:
        return 0, f"{key} must not be negative"
    return count, None


def parse_text(data: dict, key: str) -> Tuple[Optional[str], Optional[str]]:
    """Read an optional string field; returns (value or None, error)."""
    value = data.get(key)
    if value is None:
        return None, None
    if not isinstance(value, str):
        return None, f"{key} must be a string"
    return value or None, None


@api.route("/login", methods=["POST"])
def login() -> Response:
    """
    Authenticate a user and issue a portal token.

    JSON body:
        username: Login name (required)
        password: Password (required)
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not data.get("username") or not data.get("password"):
        return jsonify({"error": "Invalid request payload"}), 400

    username = str(data["username"])
    config = get_config()
    try:
        authenticated = get_authenticator(config).authenticate(username, str(data["password"]))
    except AuthBackendError as e:
        logger.error("Authentication backend error for user %s: %s", username, e)
        authenticated = False
    if not authenticated:
        return jsonify({"error": "Invalid username or password"}), 401

    role = resolve_role(username, config.admin_groups)
    logger.info("User %s logged in with role: %s", username, role)

    try:
        slurm_token = get_slurm_token(username, config.slurm_token_lifespan)
    except SlurmCommandError as e:
        logger.error("Slurm token generation error for user %s: %s", username, e)
        return jsonify({"error": "Failed to generate Slurm token"}), 500

    get_token_store().set(username, slurm_token)
    logger.info("Stored Slurm token for user: %s", username)

    token = create_token(
        username,
        role,
        config.jwt_secret,
        config.jwt_issuer,
        timedelta(hours=config.jwt_duration_hours),
    )
    return jsonify({"token": token, "user": {"username": username, "role": role}})


@api.route("/v1/cluster/status")
@token_required
def cluster_status() -> Response:
    """
    Get partitions and node states.

    Returns:
        - partitions: Partitions with their member nodes
        - nodes: Node states, CPU counts and GPU usage
        - errors: Errors reported by slurmrestd
    """
    client = slurm_client()
    if client is None:
        return jsonify({"error": SESSION_NOT_FOUND}), 401

    config = get_config()
    try:
        nodes_data = client.get_nodes()
    except SlurmAPIError as e:
        return jsonify({"error": "Failed to fetch nodes data", "details": str(e)}), 500

    allowed = None
    if config.filter_partitions:
        try:
            allowed = user_partitions(g.username)
        except SlurmCommandError as e:
            return (
                jsonify({"error": "Failed to fetch user allowed partitions", "details": str(e)}),
                500,
            )

    return jsonify(build_cluster_status(nodes_data, config.hidden_nodes, allowed))


@api.route("/v1/partitions")
@token_required
def partitions() -> Response:
    """Get the partitions the current user may submit to."""
    try:
        parts = user_partitions(g.username)
    except SlurmCommandError as e:
        return jsonify({"error": "Failed to fetch partitions data", "details": str(e)}), 500
    return jsonify({"partitions": parts})


@api.route("/v1/jobs")
@token_required
def jobs() -> Response:
    """
    Get jobs, optionally filtered.

    Query params:
        username: Only jobs of this user
        state: Only jobs whose (first) state matches, e.g. RUNNING
    """
    client = slurm_client()
    if client is None:
        return jsonify({"error": SESSION_NOT_FOUND}), 401

    username = request.args.get("username", "")
    state = request.args.get("state", "")
    logger.info("Fetching jobs with filters: username=%s, state=%s", username, state)

    try:
        data = client.get_jobs()
    except SlurmAPIError as e:
        if e.status_code is None:
            return jsonify({"error": "Failed to reach Slurm API"}), 502
        if e.status_code != 200:
            return Response(e.body, status=e.status_code, content_type=e.content_type)
        return jsonify({"error": "Failed to parse jobs JSON from Slurm API"}), 500

    all_jobs = [normalize_job(job) for job in data.get("jobs") or []]
    filtered = filter_jobs(all_jobs, username=username, state=state)
    logger.info("Total jobs fetched: %d, jobs after filtering: %d", len(all_jobs), len(filtered))
    return jsonify({"jobs": filtered})


@api.route("/v1/job/<job_id>", methods=["GET"])
@token_required
def job_detail(job_id: str) -> Response:
    """Get a job's full slurmrestd record."""
    if not is_valid_job_id(job_id):
        return jsonify({"error": "Invalid job ID"}), 400
    client = slurm_client()
    if client is None:
        return jsonify({"error": SESSION_NOT_FOUND}), 401

    logger.info("Received get job request for job %s by user %s", job_id, g.username)
    try:
        resp = client.get_job(job_id)
    except SlurmAPIError:
        return jsonify({"error": "Failed to reach Slurm API for getting job"}), 502
    return proxy_response(resp)


@api.route("/v1/job/<job_id>", methods=["DELETE"])
@token_required
def cancel_job(job_id: str) -> Response:
    """Cancel a job."""
    if not is_valid_job_id(job_id):
        return jsonify({"error": "Invalid job ID"}), 400
    client = slurm_client()
    if client is None:
        return jsonify({"error": SESSION_NOT_FOUND}), 401

    logger.info("Received job cancellation request for job %s by user %s", job_id, g.username)
    try:
        resp = client.cancel_job(job_id)
    except SlurmAPIError:
        return jsonify({"error": "Failed to reach Slurm API for job cancellation"}), 502
    return proxy_response(resp)


def _forward_post(action: str) -> Response:
    client = slurm_client()
    if client is None:
        return jsonify({"error": SESSION_NOT_FOUND}), 401

    payload = request.get_json(silent=True)
    if payload is None:
        return jsonify({"error": "Failed to read request body"}), 400

    logger.info("Received POST request for user %s, proxying to job/%s", g.username, action)
    try:
        if action == "submit":
            resp = client.submit_job(payload)
        else:
            resp = client.allocate_job(payload)
    except SlurmAPIError:
        return jsonify({"error": "Failed to reach Slurm API endpoint"}), 502
    return proxy_response(resp)


@api.route("/v1/job/submit", methods=["POST"])
@token_required
def submit_job() -> Response:
    """Forward a job description to slurmrestd job/submit."""
    return _forward_post("submit")


@api.route("/v1/job/allocate", methods=["POST"])
@token_required
def allocate_job() -> Response:
    """Forward an allocation request to slurmrestd job/allocate."""
    return _forward_post("allocate")


@api.route("/v1/job/connect/<job_id>")
@token_required
def job_connect_log(job_id: str) -> Response:
    """Get the connection instructions a job wrote to the user's home."""
    if not is_valid_job_id(job_id):
        return jsonify({"error": "Invalid job ID"}), 400

    try:
        user = lookup_user(g.username)
    except SlurmCommandError as e:
        logger.warning("%s", e)
        return jsonify({"error": "Could not find user on the server"}), 500

    config = get_config()
    try:
        content = read_job_log(user.home, config.connect_log_pattern, job_id)
    except OSError as e:
        logger.error("Failed to read connect log for job %s: %s", job_id, e)
        return jsonify({"error": "Failed to read log file"}), 500

    if content is None:
        return jsonify({"error": "Log file not found"}), 404
    return jsonify({"content": content})


@api.route("/v1/jobs/info")
@token_required
def job_info_logs() -> Response:
    """
    Get all job info logs of the current user.

    Returns:
        - num: Number of logs found
        - infos: Mapping of job ID to log content
    """
    try:
        user = lookup_user(g.username)
    except SlurmCommandError as e:
        logger.warning("%s", e)
        return jsonify({"error": "Could not find user on the server"}), 500

    config = get_config()
    try:
        infos = collect_job_logs(user.home, config.info_log_pattern)
    except OSError as e:
        logger.error("Failed to read log directory for user %s: %s", g.username, e)
        return jsonify({"error": "Failed to read log directory"}), 500
    return jsonify({"num": len(infos), "infos": infos})


@api.route("/v1/sbatch", methods=["POST"])
@token_required
def sbatch() -> Response:
    """
    Submit a batch script with sbatch as the current user.

    JSON body:
        script: Script content (required)
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict) or not isinstance(data.get("script"), str):
        return jsonify({"error": "Invalid request payload", "details": "script is required"}), 400
    if not data["script"].strip():
        return jsonify({"error": "Invalid request payload", "details": "script is empty"}), 400

    try:
        job_id = submit_batch_script(g.username, data["script"])
    except SlurmCommandError as e:
        logger.error("Failed to submit batch script for user %s: %s", g.username, e)
        if isinstance(e, SbatchOutputError):
            return jsonify({"error": str(e), "output": e.output}), 500
        return jsonify({"error": "Failed to execute sbatch command", "output": e.output}), 500

    logger.info("Successfully submitted job %s for user %s", job_id, g.username)
    return jsonify({"job_id": job_id})


@api.route("/v1/salloc/interactive", methods=["POST"])
@token_required
def create_interactive_session() -> Response:
    """
    Start an interactive salloc session on a pseudo-terminal.

    JSON body:
        task_name: Job name (optional)
        partition: Partition (optional)
        gpu_count: Number of GPUs (optional)
        cpu_count: CPUs per task (optional)
        time: Time limit, e.g. "0-01:00:00" (optional)
        nodelist: Nodes to run on (optional)

    Attach with the WebSocket /api/v1/salloc/interactive/<id>/attach.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Invalid request payload"}), 400

    text = {}
    for key in ("task_name", "partition", "time", "nodelist"):
        text[key], error = parse_text(data, key)
        if error is not None:
            return jsonify({"error": "Invalid request payload", "details": error}), 400

    gpu_count, error = parse_count(data, "gpu_count")
    if error is None:
        cpu_count, error = parse_count(data, "cpu_count")
    if error is not None:
        return jsonify({"error": "Invalid request payload", "details": error}), 400

    cmd = build_salloc_args(
        task_name=text["task_name"],
        partition=text["partition"],
        gpu_count=gpu_count,
        cpu_count=cpu_count,
        time_limit=text["time"],
        nodelist=text["nodelist"],
    )

    config = get_config()
    try:
        session = start_interactive_session(
            get_session_store(),
            g.username,
            cmd,
            name=text["task_name"] or "",
            cleanup_delay=config.session_cleanup_delay,
        )
    except SlurmCommandError as e:
        return jsonify({"error": "Failed to start salloc process", "details": str(e)}), 500

    return (
        jsonify({"session_id": session.id, "status": session.status, "name": session.name}),
        202,
    )


@api.route("/v1/salloc/interactive", methods=["GET"])
@token_required
def list_interactive_sessions() -> Response:
    """Get the current user's interactive sessions."""
    sessions = get_session_store().list(username=g.username)
    return jsonify({"sessions": [s.to_dict() for s in sessions]})


@api.route("/v1/salloc/interactive/<session_id>", methods=["DELETE"])
@token_required
def delete_interactive_session(session_id: str) -> Response:
    """Terminate one of the current user's interactive sessions."""
    store = get_session_store()
    session = store.get(session_id)
    if session is None:
        return jsonify({"error": "Session not found"}), 404
    if session.username != g.username:
        return jsonify({"error": "Session belongs to another user"}), 403

    session.pty.terminate()
    store.remove(session_id)
    logger.info("User %s terminated session %s", g.username, session_id)
    return jsonify({"success": True})


@api.route("/v1/scripts/generate", methods=["POST"])
@token_required
def scripts_generate() -> Response:
    """
    Generate a salloc command or sbatch script.

    JSON body:
        kind: "salloc" or "sbatch" (default "sbatch")
        job_name, partition, run_time, nodes, gpu_total, gpu_per_node,
        tasks_per_node, cpus_per_task, output_file, error_file, work_dir,
        mail_type, mail_user, task_script: Script options (all optional)
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({"error": "Invalid request payload"}), 400
    try:
        script = generate_script(data.get("kind", "sbatch"), data)
    except ScriptOptionsError as e:
        return jsonify({"error": str(e)}), 400
    return jsonify({"script": script})


@api.route("/v1/admin/sessions")
@admin_required
def admin_sessions() -> Response:
    """Get every interactive session and the users holding Slurm tokens."""
    sessions = get_session_store().list()
    return jsonify(
        {
            "sessions": [s.to_dict() for s in sessions],
            "logged_in_users": get_token_store().usernames(),
        }
    )
