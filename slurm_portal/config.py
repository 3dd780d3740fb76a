"""Configuration management for Slurm Portal."""
from __future__ import annotations

import argparse
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


# Paths are relative to the user's home directory
DEFAULT_CONNECT_LOG_PATTERN = ".slurm/connect-{id}.log"
DEFAULT_INFO_LOG_PATTERN = ".slurm/info-{id}.log"

DEFAULT_JWT_SECRET = "change-me"
DEFAULT_HIDDEN_NODES = ["login", "portal", "app"]
DEFAULT_ADMIN_GROUPS = ["wheel", "root", "sudo"]


@dataclass
class LogPattern:
    """
    Per-job log file path pattern, relative to a user's home directory.

    Template variables:
        {id} - Job ID

    Examples:
        ".slurm/connect-{id}.log"   - Default connect log
        ".slurm/info-{id}.log"      - Default info log
        "logs/{id}/connect.txt"     - Nested by job ID
    """

    pattern: str = DEFAULT_CONNECT_LOG_PATTERN

    def format_path(self, home: Path, job_id: str) -> Path:
        """Format the pattern into a concrete file path under ``home``."""
        formatted = self.pattern.format(id=job_id)
        return (home / formatted).resolve()

    def directory(self, home: Path) -> Path:
        """Directory holding the log files (the pattern's parent)."""
        return (home / self.pattern).parent

    def to_glob_pattern(self) -> str:
        """Convert the file-name part of the pattern to a glob."""
        return Path(self.pattern).name.replace("{id}", "*")

    def extract_job_id(self, file_name: str) -> Optional[str]:
        """
        Extract the job ID from a log file name.

        Returns None if the name does not match the pattern.
        """
        regex_pattern = re.escape(Path(self.pattern).name)
        regex_pattern = regex_pattern.replace(r"\{id\}", r"(?P<id>[^/]+)")
        match = re.match(f"^{regex_pattern}$", file_name)
        if match:
            return match.group("id")
        return None

    def validate(self) -> List[str]:
        """
        Validate the pattern.

        Returns list of error messages (empty if valid).
        """
        errors = []
        if "{id}" not in self.pattern:
            errors.append("Pattern must contain {id} placeholder")
        if "{id}" in str(Path(self.pattern).parent):
            errors.append("{id} placeholder must be in the file name")
        if Path(self.pattern).is_absolute():
            errors.append("Pattern must be relative to the home directory")
        return errors


@dataclass
class LdapSettings:
    """Directory used to check login credentials."""

    host: str = "127.0.0.1"
    port: int = 389
    bind_dn: str = ""
    bind_password: str = ""
    search_base: str = ""
    user_filter: str = "(uid=%s)"


@dataclass
class Config:
    """Application configuration."""

    host: str = "127.0.0.1"
    port: int = 5000
    terminal_port: int = 5001
    log_level: str = "INFO"

    # slurmrestd
    slurm_api_url: str = "http://127.0.0.1:6820"
    slurm_api_version: str = "v0.0.42"
    slurm_token_lifespan: int = 90000
    request_timeout: int = 30

    # Portal tokens
    jwt_secret: str = DEFAULT_JWT_SECRET
    jwt_issuer: str = "slurm-portal"
    jwt_duration_hours: int = 24

    # Login
    auth_backend: str = "ldap"
    ldap: LdapSettings = field(default_factory=LdapSettings)
    users_file: Optional[Path] = None
    admin_groups: List[str] = field(default_factory=lambda: list(DEFAULT_ADMIN_GROUPS))

    # Cluster view
    hidden_nodes: List[str] = field(default_factory=lambda: list(DEFAULT_HIDDEN_NODES))
    filter_partitions: bool = False

    # Job logs
    connect_log_pattern: LogPattern = field(default_factory=LogPattern)
    info_log_pattern: LogPattern = field(
        default_factory=lambda: LogPattern(pattern=DEFAULT_INFO_LOG_PATTERN)
    )

    # Interactive sessions
    session_cleanup_delay: int = 60

    @property
    def slurm_api_base(self) -> str:
        """Base URL of the versioned slurmrestd API."""
        return f"{self.slurm_api_url.rstrip('/')}/slurm/{self.slurm_api_version}"

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "Config":
        """Create config from parsed arguments."""
        return cls(
            host=args.host,
            port=args.port,
            terminal_port=args.terminal_port or args.port + 1,
            log_level=args.log_level,
            slurm_api_url=args.slurm_api_url,
            slurm_api_version=args.slurm_api_version,
            slurm_token_lifespan=args.slurm_token_lifespan,
            request_timeout=args.request_timeout,
            jwt_secret=args.jwt_secret,
            jwt_issuer=args.jwt_issuer,
            jwt_duration_hours=args.jwt_duration_hours,
            auth_backend=args.auth_backend,
            ldap=LdapSettings(
                host=args.ldap_host,
                port=args.ldap_port,
                bind_dn=args.ldap_bind_dn,
                bind_password=args.ldap_bind_password,
                search_base=args.ldap_search_base,
                user_filter=args.ldap_user_filter,
            ),
            users_file=args.users_file.expanduser().resolve() if args.users_file else None,
            admin_groups=_split_list(args.admin_groups),
            hidden_nodes=_split_list(args.hidden_nodes),
            filter_partitions=args.filter_partitions,
            connect_log_pattern=LogPattern(pattern=args.connect_log_pattern),
            info_log_pattern=LogPattern(pattern=args.info_log_pattern),
            session_cleanup_delay=args.session_cleanup_delay,
        )


def _split_list(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Slurm Portal - A web dashboard for monitoring and using a Slurm cluster",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment variables:
  SLURM_PORTAL_JWT_SECRET      Secret used to sign portal tokens
  SLURM_PORTAL_LDAP_PASSWORD   Password of the LDAP service account

Log pattern template variables:
  {id} - Job ID
""",
    )
    parser.add_argument("--host", default="127.0.0.1", help="Host to bind to (default: 127.0.0.1)")
    parser.add_argument("--port", type=int, default=5000, help="Port to bind to (default: 5000)")
    parser.add_argument(
        "--terminal-port",
        type=int,
        default=0,
        help="Port for terminal WebSockets (default: port + 1)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )
    parser.add_argument(
        "--slurm-api-url",
        default="http://127.0.0.1:6820",
        help="slurmrestd base URL (default: http://127.0.0.1:6820)",
    )
    parser.add_argument(
        "--slurm-api-version",
        default="v0.0.42",
        help="slurmrestd API version (default: v0.0.42)",
    )
    parser.add_argument(
        "--slurm-token-lifespan",
        type=int,
        default=90000,
        help="Lifespan of Slurm tokens in seconds (default: 90000)",
    )
    parser.add_argument(
        "--request-timeout",
        type=int,
        default=30,
        help="Timeout for slurmrestd requests in seconds (default: 30)",
    )
    parser.add_argument(
        "--jwt-secret",
        default=os.environ.get("SLURM_PORTAL_JWT_SECRET", DEFAULT_JWT_SECRET),
        help="Secret used to sign portal tokens",
    )
    parser.add_argument("--jwt-issuer", default="slurm-portal", help="Portal token issuer")
    parser.add_argument(
        "--jwt-duration-hours",
        type=int,
        default=24,
        help="Portal token lifetime in hours (default: 24)",
    )
    parser.add_argument(
        "--auth-backend",
        default="ldap",
        choices=["ldap", "users-file"],
        help="How login credentials are checked (default: ldap)",
    )
    parser.add_argument("--ldap-host", default="127.0.0.1", help="LDAP server host")
    parser.add_argument("--ldap-port", type=int, default=389, help="LDAP server port")
    parser.add_argument("--ldap-bind-dn", default="", help="DN of the LDAP service account")
    parser.add_argument(
        "--ldap-bind-password",
        default=os.environ.get("SLURM_PORTAL_LDAP_PASSWORD", ""),
        help="Password of the LDAP service account",
    )
    parser.add_argument("--ldap-search-base", default="", help="Base DN for user searches")
    parser.add_argument(
        "--ldap-user-filter",
        default="(uid=%s)",
        help="User search filter, %%s is the username (default: (uid=%%s))",
    )
    parser.add_argument(
        "--users-file",
        type=Path,
        default=None,
        help="YAML file mapping usernames to password hashes (users-file backend)",
    )
    parser.add_argument(
        "--admin-groups",
        default=",".join(DEFAULT_ADMIN_GROUPS),
        help="Comma-separated groups granting the admin role",
    )
    parser.add_argument(
        "--hidden-nodes",
        default=",".join(DEFAULT_HIDDEN_NODES),
        help="Comma-separated keywords; nodes containing one are hidden",
    )
    parser.add_argument(
        "--filter-partitions",
        action="store_true",
        help="Only show partitions the logged-in user may submit to",
    )
    parser.add_argument(
        "--connect-log-pattern",
        default=DEFAULT_CONNECT_LOG_PATTERN,
        help=f"Job connect log path relative to home (default: {DEFAULT_CONNECT_LOG_PATTERN})",
    )
    parser.add_argument(
        "--info-log-pattern",
        default=DEFAULT_INFO_LOG_PATTERN,
        help=f"Job info log path relative to home (default: {DEFAULT_INFO_LOG_PATTERN})",
    )
    parser.add_argument(
        "--session-cleanup-delay",
        type=int,
        default=60,
        help="Seconds an exited interactive session stays listed (default: 60)",
    )
    parser.add_argument(
        "--hash-password",
        action="store_true",
        help="Prompt for a password, print its hash for the users file and exit",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    """Configure root logging for the portal."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


# Global config instance, set during app initialization
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the current configuration."""
    if _config is None:
        raise RuntimeError("Configuration not initialized. Call set_config() first.")
    return _config


def set_config(config: Config) -> None:
    """Set the global configuration."""
    global _config
    _config = config
