"""WebSocket endpoints attaching browser terminals to pseudo-terminals.

Two endpoints are served on the terminal port:

    /api/v1/shell?token=...                              login shell as the user
    /api/v1/salloc/interactive/<id>/attach?token=...     existing salloc session

Bytes are forwarded as-is in both directions; the browser side is xterm.js
with its attach addon.
"""
from __future__ import annotations

import logging
import re
import subprocess
import threading
from dataclasses import dataclass
from http import HTTPStatus
from typing import Optional
from urllib.parse import parse_qs, urlsplit

from websockets.exceptions import ConnectionClosed
from websockets.sync.server import Server, ServerConnection, serve

from slurm_portal.auth.tokens import TokenError, decode_token
from slurm_portal.config import Config, get_config
from slurm_portal.services.sessions import PtyProcess, SessionStore, get_session_store, spawn_pty
from slurm_portal.services.slurm import SlurmCommandError

logger = logging.getLogger(__name__)

SHELL_PATH = "/api/v1/shell"
ATTACH_RE = re.compile(r"^/api/v1/salloc/interactive/(?P<session_id>[^/]+)/attach$")
SHELL_COMMAND = ["bash", "-l"]

# Seconds between checks for a closed socket while the pty is idle
POLL_INTERVAL = 0.5


class TerminalRequestError(Exception):
    """Rejects a WebSocket handshake with an HTTP status."""

    def __init__(self, status: HTTPStatus, message: str):
        self.status = status
        super().__init__(message)


@dataclass
class TerminalTarget:
    """What a WebSocket connection should be attached to."""

    kind: str  # "shell" or "attach"
    username: str
    session_id: Optional[str] = None


def resolve_target(path: str, config: Config, store: SessionStore) -> TerminalTarget:
    """
    Authenticate a handshake path and work out what it attaches to.

    Raises TerminalRequestError (401 bad token, 403 foreign session,
    404 unknown path or session).
    """
    parts = urlsplit(path)
    token = parse_qs(parts.query).get("token", [""])[0]

    match = ATTACH_RE.match(parts.path)
    if parts.path != SHELL_PATH and match is None:
        raise TerminalRequestError(HTTPStatus.NOT_FOUND, "Unknown terminal endpoint")

    if not token:
        raise TerminalRequestError(HTTPStatus.UNAUTHORIZED, "Token is required")
    try:
        claims = decode_token(token, config.jwt_secret, config.jwt_issuer)
    except TokenError as e:
        raise TerminalRequestError(HTTPStatus.UNAUTHORIZED, "Invalid or expired token") from e

    if match is None:
        return TerminalTarget(kind="shell", username=claims.username)

    session_id = match.group("session_id")
    session = store.get(session_id)
    if session is None:
        raise TerminalRequestError(HTTPStatus.NOT_FOUND, "Session not found")
    if session.username != claims.username:
        raise TerminalRequestError(HTTPStatus.FORBIDDEN, "Session belongs to another user")
    return TerminalTarget(kind="attach", username=claims.username, session_id=session_id)


def forward(websocket: ServerConnection, pty: PtyProcess) -> None:
    """
    Copy bytes between the socket and the pty until either side closes.

    Socket input is written to the pty on a helper thread; pty output is
    sent from the calling thread.
    """
    disconnected = threading.Event()

    def pump_input() -> None:
        try:
            for message in websocket:
                data = message.encode() if isinstance(message, str) else message
                pty.write(data)
        except (ConnectionClosed, OSError):
            pass
        finally:
            disconnected.set()

    reader = threading.Thread(target=pump_input, name="terminal-input", daemon=True)
    reader.start()

    while not disconnected.is_set():
        if not pty.wait_readable(POLL_INTERVAL):
            continue
        data = pty.read()
        if data is None:
            continue
        if not data:
            break
        try:
            websocket.send(data)
        except ConnectionClosed:
            break


class TerminalServer:
    """Runs the terminal WebSocket endpoints in a background thread."""

    def __init__(self, host: str, port: int, store: Optional[SessionStore] = None):
        self.host = host
        self.port = port
        self.store = store or get_session_store()
        self._server: Optional[Server] = None
        self._thread: Optional[threading.Thread] = None

    def process_request(self, connection: ServerConnection, request):
        """Reject unauthenticated or unknown handshakes before upgrading."""
        try:
            resolve_target(request.path, get_config(), self.store)
        except TerminalRequestError as e:
            logger.info("Rejected terminal connection to %s: %s", urlsplit(request.path).path, e)
            return connection.respond(e.status, f"{e}\n")
        return None

    def handler(self, websocket: ServerConnection) -> None:
        try:
            target = resolve_target(websocket.request.path, get_config(), self.store)
        except TerminalRequestError as e:
            websocket.close(code=1008, reason=str(e))
            return

        if target.kind == "shell":
            self._run_shell(websocket, target.username)
        else:
            self._attach(websocket, target)

    def _run_shell(self, websocket: ServerConnection, username: str) -> None:
        logger.info("Shell access requested for user: %s", username)
        try:
            pty = spawn_pty(username, SHELL_COMMAND)
        except SlurmCommandError as e:
            logger.error("Failed to start shell for user %s: %s", username, e)
            websocket.close(code=1011, reason="Failed to start shell")
            return
        try:
            forward(websocket, pty)
        finally:
            pty.terminate()
            try:
                pty.proc.wait(timeout=5)
            except subprocess.TimeoutExpired:
                pty.proc.kill()
                pty.proc.wait()
            logger.info("Shell session for user %s closed", username)

    def _attach(self, websocket: ServerConnection, target: TerminalTarget) -> None:
        session = self.store.get(target.session_id)
        if session is None:
            websocket.close(code=1008, reason="Session not found")
            return
        logger.info("User %s attached to salloc session %s", target.username, session.id)
        forward(websocket, session.pty)
        logger.info("User %s detached from salloc session %s", target.username, session.id)

    def start(self) -> None:
        self._server = serve(
            self.handler,
            self.host,
            self.port,
            process_request=self.process_request,
        )
        # Port 0 binds an ephemeral port
        self.port = self._server.socket.getsockname()[1]
        self._thread = threading.Thread(
            target=self._server.serve_forever, name="terminal-server", daemon=True
        )
        self._thread.start()
        logger.info("Terminal server listening on ws://%s:%d", self.host, self.port)

    def shutdown(self) -> None:
        if self._server is not None:
            self._server.shutdown()
            self._server = None
