"""In-memory stores for Slurm tokens and interactive terminal sessions."""
from __future__ import annotations

import errno
import logging
import os
import select
import signal
import subprocess
import threading
import time
import uuid
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from slurm_portal.services.slurm import SlurmCommandError, lookup_user, user_environment

logger = logging.getLogger(__name__)

# Seconds to wait before retrying a write to a full pty buffer
WRITE_RETRY_INTERVAL = 0.01


class TokenStore:
    """Thread-safe map of username to Slurm JWT."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def set(self, username: str, token: str) -> None:
        with self._lock:
            self._data[username] = token

    def get(self, username: str) -> Optional[str]:
        with self._lock:
            return self._data.get(username)

    def remove(self, username: str) -> None:
        with self._lock:
            self._data.pop(username, None)

    def usernames(self) -> List[str]:
        with self._lock:
            return sorted(self._data)

    def clear(self) -> None:
        with self._lock:
            self._data.clear()


@dataclass
class PtyProcess:
    """
    A process attached to the slave side of a pseudo-terminal.

    Reads, writes and close() share a lock so that a descriptor number
    recycled after close() is never touched through this object.
    """

    proc: subprocess.Popen
    master_fd: int
    _closed: bool = False
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def read(self, size: int = 4096) -> Optional[bytes]:
        """
        Read pty output.

        Returns b"" at EOF or once the pty is closed, and None when the
        descriptor is non-blocking and nothing is buffered yet.
        """
        with self._lock:
            if self._closed:
                return b""
            try:
                return os.read(self.master_fd, size)
            except BlockingIOError:
                return None
            except OSError:
                return b""

    def wait_readable(self, timeout: float) -> bool:
        """True when output (or EOF) is ready within ``timeout`` seconds."""
        if self._closed:
            return True
        try:
            ready, _, _ = select.select([self.master_fd], [], [], timeout)
        except (OSError, ValueError):
            return True
        return bool(ready)

    def write(self, data: bytes) -> None:
        """Write all of ``data``; raises OSError once the pty is closed."""
        view = memoryview(data)
        while view:
            with self._lock:
                if self._closed:
                    raise OSError(errno.EBADF, "pty is closed")
                try:
                    written = os.write(self.master_fd, view)
                except BlockingIOError:
                    written = 0
            view = view[written:]
            if view and not written:
                time.sleep(WRITE_RETRY_INTERVAL)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            try:
                os.close(self.master_fd)
            except OSError:
                pass

    @property
    def closed(self) -> bool:
        return self._closed

    def terminate(self) -> None:
        """Hang up the process group and close the pty."""
        if self.proc.poll() is None:
            try:
                os.killpg(self.proc.pid, signal.SIGHUP)
            except (ProcessLookupError, PermissionError):
                self.proc.terminate()
        self.close()


def spawn_pty(username: str, cmd: List[str]) -> PtyProcess:
    """
    Start ``cmd`` as ``username`` on a new pseudo-terminal.

    The process runs in the user's home directory with a minimal
    environment, in its own session so the pty is its controlling terminal.
    """
    user = lookup_user(username)
    master_fd, slave_fd = os.openpty()
    try:
        proc = subprocess.Popen(
            cmd,
            stdin=slave_fd,
            stdout=slave_fd,
            stderr=slave_fd,
            cwd=str(user.home),
            env=user_environment(user),
            user=user.uid,
            group=user.gid,
            start_new_session=True,
            close_fds=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        os.close(master_fd)
        raise SlurmCommandError(f"Failed to start {cmd[0]} process: {e}") from e
    except BaseException:
        os.close(master_fd)
        raise
    finally:
        os.close(slave_fd)
    # Reads and writes must not block while holding the pty lock
    os.set_blocking(master_fd, False)
    return PtyProcess(proc=proc, master_fd=master_fd)


@dataclass
class InteractiveSession:
    """A running salloc process that browser terminals can attach to."""

    id: str
    name: str
    username: str
    pty: PtyProcess
    created_at: float = field(default_factory=time.time)
    exit_code: Optional[int] = None

    @property
    def status(self) -> str:
        return "running" if self.exit_code is None else "exited"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "username": self.username,
            "status": self.status,
            "created_at": self.created_at,
            "exit_code": self.exit_code,
        }


class SessionStore:
    """Thread-safe store of interactive sessions keyed by session ID."""

    def __init__(self) -> None:
        self._sessions: Dict[str, InteractiveSession] = {}
        self._lock = threading.Lock()

    def add(self, session: InteractiveSession) -> None:
        with self._lock:
            self._sessions[session.id] = session

    def get(self, session_id: str) -> Optional[InteractiveSession]:
        with self._lock:
            return self._sessions.get(session_id)

    def remove(self, session_id: str) -> None:
        with self._lock:
            session = self._sessions.pop(session_id, None)
        if session is not None:
            session.pty.close()

    def list(self, username: Optional[str] = None) -> List[InteractiveSession]:
        """Sessions, oldest first, optionally only those of ``username``."""
        with self._lock:
            sessions = list(self._sessions.values())
        if username is not None:
            sessions = [s for s in sessions if s.username == username]
        return sorted(sessions, key=lambda s: s.created_at)

    def clear(self) -> None:
        with self._lock:
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.pty.terminate()


def watch_session(
    session: InteractiveSession,
    store: SessionStore,
    cleanup_delay: float,
) -> threading.Thread:
    """
    Reap the session's process in a background thread.

    When the process exits its exit code is recorded and the session (and
    its pty) removed from ``store`` after ``cleanup_delay`` seconds.
    """

    def _wait() -> None:
        session.exit_code = session.pty.proc.wait()
        logger.info(
            "Salloc session %s for user %s has terminated (exit code %s)",
            session.id,
            session.username,
            session.exit_code,
        )
        timer = threading.Timer(cleanup_delay, store.remove, args=(session.id,))
        timer.daemon = True
        timer.start()

    thread = threading.Thread(target=_wait, name=f"session-{session.id[:8]}", daemon=True)
    thread.start()
    return thread


def start_interactive_session(
    store: SessionStore,
    username: str,
    cmd: List[str],
    name: str = "",
    cleanup_delay: float = 60,
) -> InteractiveSession:
    """Spawn ``cmd`` on a pty as ``username`` and register it in ``store``."""
    pty = spawn_pty(username, cmd)
    session_id = str(uuid.uuid4())
    session = InteractiveSession(
        id=session_id,
        name=name or f"Session-{session_id[:6]}",
        username=username,
        pty=pty,
    )
    store.add(session)
    logger.info("Started %s process for user %s (session %s)", cmd[0], username, session_id)
    watch_session(session, store, cleanup_delay)
    return session


# Process-wide stores, shared by the REST API and the terminal server
_token_store = TokenStore()
_session_store = SessionStore()


def get_token_store() -> TokenStore:
    return _token_store


def get_session_store() -> SessionStore:
    return _session_store
