"""HTML page routes for Slurm Portal."""
from __future__ import annotations

from flask import Blueprint, render_template

from slurm_portal.config import get_config
from slurm_portal.services.jobs import JOB_STATES
from slurm_portal.services.scripts import MAIL_TYPES

views = Blueprint("views", __name__)

# Browser-side refresh of the cluster overview
DASHBOARD_REFRESH_SECONDS = 30


def render_page(template: str, **context) -> str:
    """Render a page with the values every layout needs."""
    config = get_config()
    return render_template(
        template,
        terminal_port=config.terminal_port,
        **context,
    )


@views.route("/login")
def login() -> str:
    return render_page("login.html")


@views.route("/")
def dashboard() -> str:
    return render_page("dashboard.html", refresh_seconds=DASHBOARD_REFRESH_SECONDS)


@views.route("/jobs")
def jobs() -> str:
    return render_page("jobs.html", job_states=JOB_STATES)


@views.route("/jobs/batch")
def batch() -> str:
    return render_page("batch.html", mail_types=MAIL_TYPES)


@views.route("/jobs/interactive")
def interactive() -> str:
    return render_page("interactive.html")


@views.route("/script-generator")
def script_generator() -> str:
    return render_page("script_generator.html", mail_types=MAIL_TYPES)


@views.route("/tutorial")
def tutorial() -> str:
    return render_page("tutorial.html")


@views.route("/admin")
def admin() -> str:
    # The admin check happens in the browser and on /api/v1/admin/sessions
    return render_page("admin.html")
