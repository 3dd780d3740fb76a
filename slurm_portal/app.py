"""Flask application factory for Slurm Portal."""

import logging
import sys
from pathlib import Path

from flask import Flask, jsonify, request

from slurm_portal.config import DEFAULT_JWT_SECRET, Config, configure_logging, set_config
from slurm_portal.routes.api import api
from slurm_portal.routes.terminal import TerminalServer
from slurm_portal.routes.views import DASHBOARD_REFRESH_SECONDS, render_page, views

logger = logging.getLogger(__name__)


def validate_config(config: Config) -> list[str]:
    """
    Validate configuration and return list of warnings/errors.

    Returns list of warning messages. Fatal errors are raised as exceptions.
    """
    warnings = []

    # Validate log patterns
    for name, pattern in (
        ("connect", config.connect_log_pattern),
        ("info", config.info_log_pattern),
    ):
        pattern_errors = pattern.validate()
        if pattern_errors:
            raise ValueError(f"Invalid {name} log pattern: {'; '.join(pattern_errors)}")

    if config.jwt_secret == DEFAULT_JWT_SECRET:
        warnings.append(
            "Using the default JWT secret; set --jwt-secret or SLURM_PORTAL_JWT_SECRET"
        )

    if config.auth_backend == "users-file":
        if config.users_file is None:
            raise ValueError("The users-file backend requires --users-file")
        if not config.users_file.exists():
            warnings.append(f"Users file does not exist: {config.users_file}")
    elif not config.ldap.search_base:
        warnings.append("No LDAP search base configured (--ldap-search-base)")

    if config.terminal_port == config.port:
        raise ValueError("Terminal port must differ from the HTTP port")

    return warnings


def is_api_request() -> bool:
    return request.path == "/api" or request.path.startswith("/api/")


def create_app(config: Config) -> Flask:
    """Create and configure the Flask application."""
    # Validate configuration
    warnings = validate_config(config)
    for warning in warnings:
        print(f"Warning: {warning}", file=sys.stderr)

    # Set global config
    set_config(config)
    configure_logging(config.log_level)

    # Create Flask app with correct template and static paths
    package_dir = Path(__file__).parent
    app = Flask(
        __name__,
        template_folder=str(package_dir / "templates"),
        static_folder=str(package_dir / "static"),
    )

    # Register blueprints
    app.register_blueprint(api)
    app.register_blueprint(views)

    @app.errorhandler(404)
    def not_found(error):
        if is_api_request():
            return jsonify({"error": "API route not found"}), 404
        if request.path.startswith("/static/"):
            return error
        # Unknown pages fall back to the dashboard shell
        return render_page("dashboard.html", refresh_seconds=DASHBOARD_REFRESH_SECONDS), 200

    @app.errorhandler(405)
    def method_not_allowed(error):
        if is_api_request():
            return jsonify({"error": "Method not allowed"}), 405
        return error

    @app.errorhandler(500)
    def internal_error(error):
        logger.error("Unhandled error on %s %s: %s", request.method, request.path, error)
        if is_api_request():
            return jsonify({"error": "Internal server error"}), 500
        return error

    return app


def run_app(config: Config) -> None:
    """Create and run the application."""
    app = create_app(config)
    terminal_server = TerminalServer(config.host, config.terminal_port)
    terminal_server.start()

    print(f"Starting Slurm Portal on http://{config.host}:{config.port}")
    print(f"Terminal WebSockets: ws://{config.host}:{config.terminal_port}")
    print(f"slurmrestd: {config.slurm_api_base}")
    print(f"Auth backend: {config.auth_backend}")
    try:
        app.run(host=config.host, port=config.port, debug=False, threaded=True)
    finally:
        terminal_server.shutdown()
