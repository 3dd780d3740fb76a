"""Login credential checks and role resolution."""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Iterable, Optional

import yaml
from ldap3 import NO_ATTRIBUTES, Connection, Server
from ldap3.core.exceptions import LDAPException
from ldap3.utils.conv import escape_filter_chars
from passlib.context import CryptContext

from slurm_portal.config import Config, LdapSettings
from slurm_portal.services.slurm import SlurmCommandError, get_user_groups

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256", "bcrypt"], deprecated="auto")


class AuthBackendError(Exception):
    """Raised when credentials cannot be checked (directory down, bad file)."""


class Authenticator(ABC):
    """Checks a username/password pair."""

    @abstractmethod
    def authenticate(self, username: str, password: str) -> bool:
        """
        Return True if the credentials are valid.

        Raises:
            AuthBackendError: If the check itself could not be performed.
        """


class LdapAuthenticator(Authenticator):
    """
    Search-then-bind against an LDAP directory.

    Binds with the service account, looks the user up with the configured
    filter, requires exactly one entry and then binds as that entry.
    """

    def __init__(self, settings: LdapSettings):
        self.settings = settings

    def _server(self) -> Server:
        return Server(self.settings.host, port=self.settings.port)

    def authenticate(self, username: str, password: str) -> bool:
        if not username or not password:
            return False
        server = self._server()
        try:
            service = Connection(
                server,
                user=self.settings.bind_dn,
                password=self.settings.bind_password,
            )
            if not service.bind():
                raise AuthBackendError("failed to bind as admin/service account")
            try:
                service.search(
                    self.settings.search_base,
                    self.settings.user_filter % escape_filter_chars(username),
                    attributes=NO_ATTRIBUTES,
                )
                entries = list(service.entries)
            finally:
                service.unbind()

            if len(entries) != 1:
                logger.info(
                    "User %s not found or not unique, entries found: %d", username, len(entries)
                )
                return False

            user_conn = Connection(server, user=entries[0].entry_dn, password=password)
            ok = user_conn.bind()
            if ok:
                user_conn.unbind()
            return bool(ok)
        except LDAPException as e:
            raise AuthBackendError(f"LDAP error: {e}") from e


class UsersFileAuthenticator(Authenticator):
    """
    Credentials from a YAML file of password hashes.

    File format::

        users:
          alice: "$pbkdf2-sha256$29000$..."
    """

    def __init__(self, path: Path):
        self.path = path

    def load_users(self) -> Dict[str, str]:
        try:
            with self.path.open("r") as handle:
                data = yaml.safe_load(handle) or {}
        except (OSError, yaml.YAMLError) as e:
            raise AuthBackendError(f"Cannot read users file {self.path}: {e}") from e
        users = data.get("users") if isinstance(data, dict) else None
        if not isinstance(users, dict):
            raise AuthBackendError(f"Users file {self.path} has no 'users' mapping")
        return {str(name): str(hashed) for name, hashed in users.items()}

    def authenticate(self, username: str, password: str) -> bool:
        if not username or not password:
            return False
        hashed = self.load_users().get(username)
        if hashed is None:
            return False
        try:
            return pwd_context.verify(password, hashed)
        except ValueError:
            logger.warning("Unrecognized password hash for user %s", username)
            return False


def hash_password(password: str) -> str:
    """Hash a password for the users file."""
    return pwd_context.hash(password)


def get_authenticator(config: Config) -> Authenticator:
    """Build the authenticator selected by ``config.auth_backend``."""
    if config.auth_backend == "users-file":
        if config.users_file is None:
            raise AuthBackendError("users-file backend requires --users-file")
        return UsersFileAuthenticator(config.users_file)
    if config.auth_backend == "ldap":
        return LdapAuthenticator(config.ldap)
    raise AuthBackendError(f"Unknown auth backend: {config.auth_backend}")


def resolve_role(username: str, admin_groups: Iterable[str], groups: Optional[Iterable[str]] = None) -> str:
    """
    "admin" if the user is in one of ``admin_groups``, else "user".

    Groups are looked up with ``groups`` when not given; lookup failures
    fall back to "user".
    """
    if groups is None:
        try:
            groups = get_user_groups(username)
        except SlurmCommandError as e:
            logger.warning("%s. Defaulting to 'user' role.", e)
            return "user"
    if set(groups).intersection(admin_groups):
        return "admin"
    return "user"
