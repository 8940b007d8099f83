"""SSH tunnel forwarding a loopback port to the remote RDP service.

One :class:`TunnelManager` owns at most one session. A session moves
through :class:`TunnelState` on a background thread:

``IDLE -> CONNECTING -> ACTIVE -> CLOSING -> CLOSED | FAILED``

While ``ACTIVE`` the session runs a keepalive thread, an accept thread and
one forwarding thread (plus one copy thread) per accepted connection. All
of them watch the session's stop event.
"""

import enum
import logging
import socket
import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Callable, List, Optional

import paramiko

from rdpssh_app.auth import (
    CONNECT_TIMEOUT,
    HostKeyPolicy,
    build_auth_config,
    normalize_address,
    open_client,
)
from rdpssh_app.certificates import CertificateBundle
from rdpssh_app.errors import (
    CancellationError,
    ForwardError,
    InputError,
    KeepaliveError,
    ListenError,
    ProcessError,
)
from rdpssh_app.viewer import ViewerLauncher

LOCAL_PORT_MIN = 33890
LOCAL_PORT_MAX = 65000
LOOPBACK_HOST = "127.0.0.1"
REMOTE_HOST = "localhost"
REMOTE_PORT = 3389
KEEPALIVE_INTERVAL = 30.0
KEEPALIVE_REQUEST = "keepalive@openssh.com"
# Poll interval for blocking accept/viewer waits so stop requests are noticed
POLL_INTERVAL = 0.2
BUFFER_SIZE = 32768


class TunnelState(enum.Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


@dataclass
class SessionResult:
    """Outcome of a finished session."""

    state: TunnelState
    error: Optional[BaseException] = None

    @property
    def cancelled(self) -> bool:
        return isinstance(self.error, CancellationError)

    @property
    def message(self) -> str:
        if self.state is TunnelState.FAILED:
            return f"Connection error: {self.error}"
        return "Disconnected"


@dataclass
class TunnelHandle:
    """Futures tracking one ``connect`` call.

    ``ready`` resolves with the local listener address once it accepts
    connections, before the viewer starts. ``done`` resolves with a
    :class:`SessionResult` when the session has been torn down. If the
    session fails before becoming ready, ``ready`` carries the error.
    """

    local_address: str
    ready: Future = field(default_factory=Future)
    done: Future = field(default_factory=Future)


def validate_local_port(value) -> int:
    """Return ``value`` as an int within the allowed local port range."""
    if value is None or str(value).strip() == "":
        raise InputError("local port is required")
    try:
        port = int(str(value).strip())
    except ValueError:
        raise InputError("local port must be a number") from None
    if port < LOCAL_PORT_MIN or port > LOCAL_PORT_MAX:
        raise InputError(
            f"local port must be between {LOCAL_PORT_MIN} and {LOCAL_PORT_MAX}"
        )
    return port


class _Session:
    """Mutable state of one running tunnel."""

    def __init__(self, host: str, username: str, local_port: int, bundle: CertificateBundle) -> None:
        self.host = host
        self.username = username
        self.local_port = local_port
        self.bundle = bundle
        self.address = f"{LOOPBACK_HOST}:{local_port}"
        self.handle = TunnelHandle(self.address)
        self.state = TunnelState.CONNECTING
        self.cancel_event = threading.Event()
        self.stop_event = threading.Event()
        self.failure: Optional[BaseException] = None
        self.client: Optional[paramiko.SSHClient] = None
        self.transport: Optional[paramiko.Transport] = None
        self.listener: Optional[socket.socket] = None
        self.viewer = None
        self.threads: List[threading.Thread] = []
        self.lock = threading.Lock()

    def fail(self, error: BaseException) -> None:
        """Record the first error that should end the session and stop it."""
        with self.lock:
            if self.failure is None:
                self.failure = error
        self.stop_event.set()


class TunnelManager:
    """Own the lifecycle of the single SSH tunnel session of the process."""

    def __init__(
        self,
        launcher=None,
        log_sink: Optional[Callable[[str], None]] = None,
        remote_host: str = REMOTE_HOST,
        remote_port: int = REMOTE_PORT,
        keepalive_interval: float = KEEPALIVE_INTERVAL,
        connect_timeout: float = CONNECT_TIMEOUT,
        host_key_policy: HostKeyPolicy = HostKeyPolicy.ACCEPT_ANY,
        known_hosts_file=None,
        client_cls: type = paramiko.SSHClient,
    ) -> None:
        self.launcher = launcher if launcher is not None else ViewerLauncher()
        self.log_sink = log_sink
        self.remote_host = remote_host
        self.remote_port = int(remote_port)
        self.keepalive_interval = float(keepalive_interval)
        self.connect_timeout = float(connect_timeout)
        self.host_key_policy = host_key_policy
        self.known_hosts_file = known_hosts_file
        self.client_cls = client_cls
        self.logger = logging.getLogger(__name__)
        self._session: Optional[_Session] = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    @property
    def status(self) -> TunnelState:
        session = self._session
        return session.state if session else TunnelState.IDLE

    @property
    def is_active(self) -> bool:
        return self.status in (
            TunnelState.CONNECTING,
            TunnelState.ACTIVE,
            TunnelState.CLOSING,
        )

    def connect(
        self,
        host: str,
        username: str,
        local_port,
        bundle: CertificateBundle,
    ) -> TunnelHandle:
        """Start a session in the background and return its handle.

        Input is validated here so :class:`InputError` is raised to the
        caller before any network activity.
        """
        if not username:
            raise InputError("ssh username is required")
        address = normalize_address(host)
        port = validate_local_port(local_port)
        with self._lock:
            if self.is_active:
                raise RuntimeError("A tunnel session is already running")
            session = _Session(address, username, port, bundle)
            self._session = session
        worker = threading.Thread(
            target=self._run, args=(session,), name="tunnel-session", daemon=True
        )
        worker.start()
        return session.handle

    def disconnect(self) -> None:
        """Cancel the running session, if any. Returns immediately."""
        session = self._session
        if session is None or not self.is_active:
            return
        self._emit("Disconnect requested by user.")
        # A session already stopping for another reason keeps that outcome
        with session.lock:
            if session.failure is None and not session.stop_event.is_set():
                session.cancel_event.set()
        session.stop_event.set()

    def wait(self, timeout: Optional[float] = None) -> Optional[SessionResult]:
        session = self._session
        if session is None:
            return None
        return session.handle.done.result(timeout=timeout)

    # ------------------------------------------------------------------
    # Session thread
    # ------------------------------------------------------------------
    def _emit(self, message: str, level: int = logging.INFO) -> None:
        self.logger.log(level, message)
        if self.log_sink is None:
            return
        try:
            self.log_sink(message)
        except Exception as exc:  # pragma: no cover
            self.logger.exception("Log sink failed: %s", exc)

    def _run(self, session: _Session) -> None:
        try:
            self._open(session)
            with session.lock:
                if session.cancel_event.is_set():
                    raise CancellationError("connection cancelled")
                session.state = TunnelState.ACTIVE
            session.handle.ready.set_result(session.address)
            self._supervise(session)
        except Exception as exc:
            session.fail(exc)
        finally:
            try:
                self._teardown(session)
            except Exception as exc:
                self.logger.exception("Tunnel teardown failed: %s", exc)
            result = self._finish(session, session.failure)
            if not session.handle.ready.done():
                session.handle.ready.set_exception(
                    result.error or CancellationError("session ended before it was ready")
                )

    def _open(self, session: _Session) -> None:
        config = build_auth_config(
            session.username,
            session.bundle,
            timeout=self.connect_timeout,
            host_key_policy=self.host_key_policy,
            known_hosts_file=self.known_hosts_file,
        )
        self._emit(f"Dialing SSH to {session.host}...")
        session.client = open_client(session.host, config, self.client_cls)
        session.transport = session.client.get_transport()
        self._emit("SSH connection established.")
        if session.stop_event.is_set():
            raise CancellationError("connection cancelled")

        self._start_thread(session, self._keepalive_loop, "tunnel-keepalive")

        try:
            session.listener = socket.create_server((LOOPBACK_HOST, session.local_port))
        except OSError as exc:
            raise ListenError(
                f"failed to start local listener on {session.address}: {exc}"
            ) from exc
        session.listener.settimeout(POLL_INTERVAL)
        if session.stop_event.is_set():
            raise CancellationError("connection cancelled")
        self._emit(
            f"Tunnel listening on {session.address} -> "
            f"remote:{self.remote_host}:{self.remote_port}"
        )
        self._start_thread(session, self._accept_loop, "tunnel-accept")

    def _supervise(self, session: _Session) -> None:
        """Run the viewer and block until it exits or the session stops."""
        if session.stop_event.is_set():
            return
        session.viewer = self.launcher.launch(session.address, session.username)
        self._emit("Remote Desktop Client launched.")
        while not session.stop_event.wait(POLL_INTERVAL):
            code = session.viewer.poll()
            if code is None:
                continue
            self._emit("Remote Desktop Client exited.")
            if code != 0:
                raise ProcessError(f"viewer exited with status {code}")
            break

    def _teardown(self, session: _Session) -> None:
        if session.state is not TunnelState.CONNECTING:
            session.state = TunnelState.CLOSING
        session.stop_event.set()
        if session.viewer is not None:
            try:
                session.viewer.terminate()
            except OSError as exc:
                self.logger.warning("Failed to terminate viewer: %s", exc)
        if session.listener is not None:
            session.listener.close()
        if session.client is not None:
            session.client.close()
        with session.lock:
            threads = list(session.threads)
        for thread in threads:
            if thread is not threading.current_thread():
                thread.join(timeout=CONNECT_TIMEOUT)
        if session.viewer is not None:
            session.viewer.cleanup()

    def _finish(self, session: _Session, error: Optional[BaseException]) -> SessionResult:
        if session.cancel_event.is_set():
            if not isinstance(error, CancellationError):
                error = CancellationError("session cancelled by user")
            state = TunnelState.CLOSED
            self._emit("Session ended normally.")
        elif error is not None:
            state = TunnelState.FAILED
            self._emit(f"Tunnel error: {error}", logging.ERROR)
        else:
            state = TunnelState.CLOSED
            self._emit("Session ended normally.")
        session.state = state
        result = SessionResult(state, error)
        session.handle.done.set_result(result)
        return result

    # ------------------------------------------------------------------
    # Worker threads
    # ------------------------------------------------------------------
    def _start_thread(self, session: _Session, target, name: str, *args) -> threading.Thread:
        thread = threading.Thread(target=target, args=(session, *args), name=name, daemon=True)
        with session.lock:
            session.threads = [t for t in session.threads if t.is_alive()]
            session.threads.append(thread)
        thread.start()
        return thread

    def _send_keepalive(self, transport: paramiko.Transport) -> None:
        try:
            transport.global_request(KEEPALIVE_REQUEST, wait=True)
        except (paramiko.SSHException, OSError, EOFError) as exc:
            raise KeepaliveError(f"keep-alive failed: {exc}") from exc
        # A refused request still proves liveness; a dead transport does not
        if not transport.is_active():
            raise KeepaliveError("keep-alive failed: transport closed")

    def _keepalive_loop(self, session: _Session) -> None:
        while not session.stop_event.wait(self.keepalive_interval):
            try:
                self._send_keepalive(session.transport)
            except KeepaliveError as exc:
                if session.stop_event.is_set():
                    return
                session.fail(exc)
                self._emit(f"Keep-alive failed: {exc}")
                return

    def _accept_loop(self, session: _Session) -> None:
        listener = session.listener
        while not session.stop_event.is_set():
            try:
                conn, peer = listener.accept()
            except socket.timeout:
                continue
            except OSError as exc:
                if not session.stop_event.is_set():
                    self.logger.error("Accept on %s failed: %s", session.address, exc)
                return
            conn.settimeout(None)
            self._start_thread(session, self._forward, "tunnel-forward", conn, peer)

    def _forward(self, session: _Session, conn: socket.socket, peer) -> None:
        try:
            channel = session.transport.open_channel(
                "direct-tcpip",
                (self.remote_host, self.remote_port),
                peer[:2],
                timeout=self.connect_timeout,
            )
        except (paramiko.SSHException, OSError, EOFError) as exc:
            error = ForwardError(f"Failed to dial remote RDP port: {exc}")
            if not session.stop_event.is_set():
                self._emit(str(error))
            _close_quietly(conn)
            return
        self._emit(f"Accepted connection from {peer[0]}:{peer[1]}")
        reverse = threading.Thread(
            target=self._pump,
            args=(channel, conn, "Remote->Local"),
            name="tunnel-copy",
            daemon=True,
        )
        reverse.start()
        self._pump(conn, channel, "Local->Remote")
        reverse.join()

    def _pump(self, source, sink, direction: str) -> None:
        """Copy bytes until ``source`` ends, then close both ends."""
        written = 0
        try:
            while True:
                data = source.recv(BUFFER_SIZE)
                if not data:
                    break
                sink.sendall(data)
                written += len(data)
        except (OSError, EOFError, paramiko.SSHException) as exc:
            self.logger.debug("Copy %s stopped: %s", direction, exc)
        finally:
            _close_quietly(source)
            _close_quietly(sink)
        self._emit(f"Tunnel connection closed ({direction}). Bytes: {written}")


def _close_quietly(endpoint) -> None:
    """Shut down and close a socket or channel, ignoring errors."""
    try:
        endpoint.shutdown(socket.SHUT_RDWR)
    except (OSError, EOFError, paramiko.SSHException):
        pass
    try:
        endpoint.close()
    except (OSError, EOFError, paramiko.SSHException):
        pass
