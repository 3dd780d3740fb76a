"""Tests for slurm_portal.auth.backends module."""

from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
from ldap3.core.exceptions import LDAPSocketOpenError

from slurm_portal.auth.backends import (
    AuthBackendError,
    LdapAuthenticator,
    UsersFileAuthenticator,
    get_authenticator,
    hash_password,
    resolve_role,
)
from slurm_portal.config import Config, LdapSettings
from slurm_portal.services.slurm import SlurmCommandError


@pytest.fixture
def ldap_settings() -> LdapSettings:
    return LdapSettings(
        host="ldap.test",
        bind_dn="cn=admin,dc=example,dc=org",
        bind_password="admin-pw",
        search_base="ou=people,dc=example,dc=org",
    )


def make_connection(bind_ok: bool = True, entries=None) -> MagicMock:
    conn = MagicMock()
    conn.bind.return_value = bind_ok
    conn.entries = entries or []
    return conn


def make_entry(dn: str) -> MagicMock:
    entry = MagicMock()
    entry.entry_dn = dn
    return entry


class TestLdapAuthenticator:
    """Tests for search-then-bind LDAP authentication."""

    def test_success(self, ldap_settings: LdapSettings) -> None:
        """Test a unique user entry that binds successfully."""
        service = make_connection(entries=[make_entry("uid=alice,ou=people,dc=example,dc=org")])
        user = make_connection()
        with patch("slurm_portal.auth.backends.Connection", side_effect=[service, user]) as conn_cls:
            assert LdapAuthenticator(ldap_settings).authenticate("alice", "pw") is True

        service.search.assert_called_once()
        assert service.search.call_args[0][1] == "(uid=alice)"
        assert conn_cls.call_args_list[1].kwargs["user"] == "uid=alice,ou=people,dc=example,dc=org"
        assert conn_cls.call_args_list[1].kwargs["password"] == "pw"

    def test_filter_is_escaped(self, ldap_settings: LdapSettings) -> None:
        """Test filter metacharacters in the username are escaped."""
        service = make_connection()
        with patch("slurm_portal.auth.backends.Connection", return_value=service):
            assert LdapAuthenticator(ldap_settings).authenticate("a*)(uid=*", "pw") is False
        assert service.search.call_args[0][1] == r"(uid=a\2a\29\28uid=\2a)"

    def test_wrong_password(self, ldap_settings: LdapSettings) -> None:
        """Test a failed user bind."""
        service = make_connection(entries=[make_entry("uid=alice,dc=example,dc=org")])
        user = make_connection(bind_ok=False)
        with patch("slurm_portal.auth.backends.Connection", side_effect=[service, user]):
            assert LdapAuthenticator(ldap_settings).authenticate("alice", "bad") is False

    def test_user_not_unique(self, ldap_settings: LdapSettings) -> None:
        """Test zero or several entries fail the login."""
        service = make_connection(entries=[make_entry("a"), make_entry("b")])
        with patch("slurm_portal.auth.backends.Connection", return_value=service):
            assert LdapAuthenticator(ldap_settings).authenticate("alice", "pw") is False

    def test_service_bind_fails(self, ldap_settings: LdapSettings) -> None:
        """Test a failed service bind is a backend error."""
        with patch("slurm_portal.auth.backends.Connection", return_value=make_connection(bind_ok=False)):
            with pytest.raises(AuthBackendError, match="service account"):
                LdapAuthenticator(ldap_settings).authenticate("alice", "pw")

    def test_directory_unreachable(self, ldap_settings: LdapSettings) -> None:
        """Test ldap3 exceptions become backend errors."""
        service = MagicMock()
        service.bind.side_effect = LDAPSocketOpenError("connection refused")
        with patch("slurm_portal.auth.backends.Connection", return_value=service):
            with pytest.raises(AuthBackendError, match="LDAP error"):
                LdapAuthenticator(ldap_settings).authenticate("alice", "pw")

    def test_empty_credentials(self, ldap_settings: LdapSettings) -> None:
        """Test empty credentials never reach the directory."""
        with patch("slurm_portal.auth.backends.Connection") as conn_cls:
            assert LdapAuthenticator(ldap_settings).authenticate("alice", "") is False
        conn_cls.assert_not_called()


class TestUsersFileAuthenticator:
    """Tests for the YAML users file."""

    def test_authenticate(self, tmp_path: Path) -> None:
        """Test passwords are checked against stored hashes."""
        users_file = tmp_path / "users.yaml"
        users_file.write_text(f'users:\n  alice: "{hash_password("secret")}"\n')
        auth = UsersFileAuthenticator(users_file)
        assert auth.authenticate("alice", "secret") is True
        assert auth.authenticate("alice", "wrong") is False
        assert auth.authenticate("bob", "secret") is False

    def test_unrecognized_hash(self, tmp_path: Path) -> None:
        """Test a plain-text entry is not accepted."""
        users_file = tmp_path / "users.yaml"
        users_file.write_text("users:\n  alice: secret\n")
        assert UsersFileAuthenticator(users_file).authenticate("alice", "secret") is False

    def test_missing_file(self, tmp_path: Path) -> None:
        """Test a missing file is a backend error."""
        with pytest.raises(AuthBackendError, match="Cannot read users file"):
            UsersFileAuthenticator(tmp_path / "nope.yaml").authenticate("alice", "pw")

    def test_no_users_mapping(self, tmp_path: Path) -> None:
        """Test a file without a users mapping is a backend error."""
        users_file = tmp_path / "users.yaml"
        users_file.write_text("- alice\n")
        with pytest.raises(AuthBackendError, match="no 'users' mapping"):
            UsersFileAuthenticator(users_file).load_users()


class TestGetAuthenticator:
    """Tests for choosing the authenticator."""

    def test_ldap(self) -> None:
        assert isinstance(get_authenticator(Config()), LdapAuthenticator)

    def test_users_file(self, tmp_path: Path) -> None:
        config = Config(auth_backend="users-file", users_file=tmp_path / "users.yaml")
        assert isinstance(get_authenticator(config), UsersFileAuthenticator)

    def test_users_file_without_path(self) -> None:
        with pytest.raises(AuthBackendError):
            get_authenticator(Config(auth_backend="users-file"))


class TestResolveRole:
    """Tests for role resolution."""

    def test_given_groups(self) -> None:
        """Test membership of an admin group grants admin."""
        assert resolve_role("alice", ["wheel"], groups=["alice", "wheel"]) == "admin"
        assert resolve_role("alice", ["wheel"], groups=["alice", "users"]) == "user"

    def test_looks_up_groups(self) -> None:
        """Test groups are looked up when not given."""
        with patch("slurm_portal.auth.backends.get_user_groups", return_value=["sudo"]) as lookup:
            assert resolve_role("alice", ["wheel", "sudo"]) == "admin"
        lookup.assert_called_once_with("alice")

    def test_lookup_failure_defaults_to_user(self) -> None:
        """Test a failing group lookup falls back to the user role."""
        with patch(
            "slurm_portal.auth.backends.get_user_groups",
            side_effect=SlurmCommandError("Could not check groups for user alice"),
        ):
            assert resolve_role("alice", ["wheel"]) == "user"
