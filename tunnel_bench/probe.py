"""Probe service: a minimal HTTP responder exposed through an SSH reverse tunnel."""

import http.server
import logging
import os
import random
import re
import socket
import threading
from dataclasses import dataclass
from typing import Optional, Tuple

import paramiko
from paramiko import SSHClient

from tunnel_bench.errors import ConfigurationError, TunnelBindingError

logger = logging.getLogger("tunnel-bench")

DEFAULT_SSH_PORT = 22
DEFAULT_USERNAME = "tunnel-bench"
# Tunnel servers map the requested forwarding address to a subdomain.
DEFAULT_BIND_ADDRESS = "measure"
DEFAULT_BIND_PORT = 80
DEFAULT_MAX_DATA_SIZE = 100_000_000
PAYLOAD_SEED = 0x5EED
CHUNK_SIZE = 65536
OK_BODY = b"ok\n"


def make_payload(size: int) -> bytes:
    """Pseudo-random bytes, identical for every process and run."""
    return random.Random(PAYLOAD_SEED).randbytes(size)


def parse_server_address(value: str, default_port: int = DEFAULT_SSH_PORT) -> Tuple[str, int]:
    """Split ``host[:port]`` (``[v6]:port`` for IPv6 literals)."""
    value = value.strip()
    if value.startswith("["):
        host, _, rest = value[1:].partition("]")
        port_str = rest[1:] if rest.startswith(":") else ""
        if rest and not rest.startswith(":"):
            raise ConfigurationError(f"Invalid tunnel server address {value!r}")
    elif value.count(":") == 1:
        host, port_str = value.split(":")
    else:
        host, port_str = value, ""
    if not host:
        raise ConfigurationError(f"Invalid tunnel server address {value!r}")
    if not port_str:
        return host, default_port
    if not port_str.isdigit() or not 0 < int(port_str) < 65536:
        raise ConfigurationError(f"Invalid port in tunnel server address {value!r}")
    return host, int(port_str)


def load_private_key(key_path: str) -> paramiko.PKey:
    """Load a private key file, trying different key formats."""
    if not os.path.isfile(key_path):
        raise ConfigurationError(f"Private key not found: {key_path}")

    key_types = [
        paramiko.RSAKey,
        paramiko.ECDSAKey,
        paramiko.Ed25519Key,
    ]
    failures = []
    for key_type in key_types:
        try:
            key = key_type.from_private_key_file(key_path)
            logger.debug(f"Loaded key type: {key_type.__name__}")
            return key
        except paramiko.PasswordRequiredException:
            raise ConfigurationError(f"Private key {key_path} is encrypted; passphrases are not supported") from None
        except (paramiko.SSHException, ValueError) as e:
            failures.append(f"{key_type.__name__}: {e}")

    raise ConfigurationError(f"Unable to load private key {key_path} ({'; '.join(failures)})")


@dataclass(frozen=True)
class ProbeConfig:
    """Everything the probe needs, fixed at startup."""

    host: str
    private_key: str
    port: int = DEFAULT_SSH_PORT
    username: str = DEFAULT_USERNAME
    listen_host: str = "127.0.0.1"
    listen_port: int = 0
    bind_address: str = DEFAULT_BIND_ADDRESS
    bind_port: int = DEFAULT_BIND_PORT
    max_data_size: int = DEFAULT_MAX_DATA_SIZE
    connect_timeout: float = 10.0

    def __post_init__(self):
        if not 0 <= self.listen_port < 65536:
            raise ConfigurationError(f"Invalid listen port {self.listen_port}")
        if self.max_data_size < 0:
            raise ConfigurationError(f"Invalid max data size {self.max_data_size}")


class ProbeRequestHandler(http.server.BaseHTTPRequestHandler):
    """Routes:

    GET  /           -> 200 ``ok``
    GET  /get/<n>    -> 200 with the first n bytes of the shared payload
    POST /post/<n>   -> 204 if the body is exactly n bytes, else 400
    POST /echo       -> 200 echoing the body

    The request may be a TCP socket or a paramiko Channel.
    """

    protocol_version = "HTTP/1.1"
    server_version = "tunnel-bench-probe"
    # Idle keep-alive connections are closed after this many seconds
    timeout = 120

    GET_ROUTE = re.compile(r"^/get/(\d+)$")
    POST_ROUTE = re.compile(r"^/post/(\d+)$")

    def setup(self):
        super().setup()
        if isinstance(self.connection, socket.socket):
            self.connection.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)

    def do_GET(self):
        path = self.path.split("?", 1)[0]
        if path == "/":
            self._send_body(200, OK_BODY, "text/plain")
            return

        m = self.GET_ROUTE.match(path)
        if not m:
            self._send_status(404)
            return
        size = int(m.group(1))
        payload = self.server.payload
        if size > len(payload):
            self._send_status(400)
            return
        self._send_body(200, payload[:size])

    def do_POST(self):
        path = self.path.split("?", 1)[0]
        if path == "/echo":
            body = self._read_body(keep=True)
            if body is not None:
                self._send_body(200, body)
            return

        m = self.POST_ROUTE.match(path)
        if not m:
            self._send_status(404)
            return
        received = self._read_body(keep=False)
        if received is None:
            return
        self._send_status(204 if received == int(m.group(1)) else 400)

    def _read_body(self, keep: bool):
        """Read the request body; returns bytes, its length, or None after an error reply."""
        if "Content-Length" not in self.headers:
            self.close_connection = True
            self._send_status(411)
            return None
        try:
            length = int(self.headers["Content-Length"])
        except ValueError:
            self.close_connection = True
            self._send_status(400)
            return None
        if length < 0 or length > self.server.max_data_size:
            self.close_connection = True
            self._send_status(413 if length > 0 else 400)
            return None

        chunks = []
        remaining = length
        while remaining > 0:
            chunk = self.rfile.read(min(CHUNK_SIZE, remaining))
            if not chunk:
                break
            remaining -= len(chunk)
            if keep:
                chunks.append(chunk)
        if remaining:
            self.close_connection = True
        return b"".join(chunks) if keep else length - remaining

    def _send_status(self, code: int):
        self.send_response(code)
        self.send_header("Content-Length", "0")
        self.end_headers()

    def _send_body(self, code: int, body, content_type: str = "application/octet-stream"):
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        for offset in range(0, len(body), CHUNK_SIZE):
            # paramiko channels only accept bytes
            self.wfile.write(bytes(body[offset:offset + CHUNK_SIZE]))

    def log_message(self, format, *args):
        logger.debug(f"{self.address_string()} - {format % args}")


class ProbeServer(http.server.ThreadingHTTPServer):
    """Threaded HTTP server shared by the local socket and tunnel channels."""

    daemon_threads = True
    request_queue_size = 128
    # Keep-alive handlers may idle for ProbeRequestHandler.timeout; don't wait on them
    block_on_close = False

    def __init__(self, server_address, max_data_size: int = DEFAULT_MAX_DATA_SIZE):
        self.max_data_size = max_data_size
        self.payload = memoryview(make_payload(max_data_size))
        super().__init__(server_address, ProbeRequestHandler)

    def serve_channel(self, channel, origin):
        """Handle a forwarded channel in its own thread, like an accepted socket."""
        self.process_request(channel, origin)

    def handle_error(self, request, client_address):
        logger.debug(f"Error serving {client_address}", exc_info=True)


class ProbeService:
    """Binds a public forwarding on the tunnel server and serves it.

    Lifecycle: ``start()`` opens the local listener, authenticates and
    requests the forwarding, blocking until the server confirms or refuses
    it. ``serve_forever()`` blocks until ``stop()`` or until the tunnel
    session is lost. ``close()`` deregisters the forwarding (best effort)
    and releases the listener.
    """

    def __init__(self, config: ProbeConfig):
        self.config = config
        self.key = load_private_key(config.private_key)
        self.server: Optional[ProbeServer] = None
        self.ssh_client: Optional[SSHClient] = None
        self.transport: Optional[paramiko.Transport] = None
        self.session: Optional[paramiko.Channel] = None
        self.bound_port: Optional[int] = None
        self._server_thread: Optional[threading.Thread] = None
        self._stop = threading.Event()
        self._session_closed = threading.Event()

    @property
    def listen_address(self) -> Optional[Tuple[str, int]]:
        if self.server is None:
            return None
        return self.server.server_address[:2]

    def start(self) -> None:
        try:
            self._start_listener()
            self._bind()
        except BaseException:
            self.close()
            raise

    def _start_listener(self) -> None:
        try:
            self.server = ProbeServer(
                (self.config.listen_host, self.config.listen_port),
                max_data_size=self.config.max_data_size,
            )
        except OSError as e:
            raise ConfigurationError(
                f"Cannot listen on {self.config.listen_host}:{self.config.listen_port}: {e}"
            ) from e
        self._server_thread = threading.Thread(
            target=self.server.serve_forever,
            daemon=True,
            name="Probe-listener",
        )
        self._server_thread.start()
        host, port = self.listen_address
        logger.info(f"✓ Probe listening on {host}:{port}")

    def _bind(self) -> None:
        cfg = self.config
        self.ssh_client = SSHClient()
        self.ssh_client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        logger.info(f"Connecting to {cfg.username}@{cfg.host}:{cfg.port}...")
        try:
            self.ssh_client.connect(
                hostname=cfg.host,
                port=cfg.port,
                username=cfg.username,
                pkey=self.key,
                timeout=cfg.connect_timeout,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as e:
            raise TunnelBindingError(f"Authentication rejected by {cfg.host}:{cfg.port}: {e}") from e
        except (paramiko.SSHException, OSError) as e:
            raise TunnelBindingError(f"Unable to connect to {cfg.host}:{cfg.port}: {e}") from e
        logger.info("✓ Connected!")

        self.transport = self.ssh_client.get_transport()
        try:
            self.session = self.transport.open_session()
            self.session.set_combine_stderr(True)
            threading.Thread(
                target=self._relay_session_output,
                args=(self.session,),
                daemon=True,
                name="Probe-session",
            ).start()

            self.bound_port = self.transport.request_port_forward(
                cfg.bind_address,
                cfg.bind_port,
                handler=self._on_forwarded_channel,
            )
        except (paramiko.SSHException, EOFError, OSError) as e:
            raise TunnelBindingError(
                f"Forwarding request for {cfg.bind_address}:{cfg.bind_port} denied: {e}"
            ) from e
        logger.info(f"✓ Tunnel binding confirmed: {cfg.bind_address}:{self.bound_port}")

    def _relay_session_output(self, channel: paramiko.Channel) -> None:
        """Log whatever the tunnel server prints on the session channel."""
        try:
            while True:
                data = channel.recv(4096)
                if not data:
                    break
                for line in data.decode(errors="replace").splitlines():
                    if line.strip():
                        logger.info(f"[tunnel] {line.rstrip()}")
        except (OSError, EOFError) as e:
            logger.debug(f"Session channel closed: {e}")
        self._session_closed.set()
        if channel.exit_status_ready():
            status = channel.recv_exit_status()
            if status == 0:
                logger.info(f"Remote exited with status {status}.")
            else:
                logger.warning(f"Remote exited with status {status}.")

    def _on_forwarded_channel(self, channel, origin, server):
        logger.debug(f"Forwarded connection from {origin[0]}:{origin[1]} to {server[0]}:{server[1]}")
        self.server.serve_channel(channel, origin)

    def serve_forever(self, poll_interval: float = 1.0) -> None:
        while not self._stop.wait(poll_interval):
            if self.transport is not None and not self.transport.is_active():
                raise TunnelBindingError(f"Tunnel session to {self.config.host}:{self.config.port} was lost")
            if self._session_closed.is_set():
                raise TunnelBindingError(f"Tunnel server {self.config.host}:{self.config.port} closed the session")

    def stop(self) -> None:
        self._stop.set()

    def close(self) -> None:
        """Deregister the forwarding and release the listener."""
        self._stop.set()
        if self.transport is not None and self.transport.is_active() and self.bound_port is not None:
            try:
                self.transport.cancel_port_forward(self.config.bind_address, self.bound_port)
                logger.info(f"✗ Tunnel binding released: {self.config.bind_address}:{self.bound_port}")
            except (paramiko.SSHException, EOFError, OSError) as e:
                logger.debug(f"Error releasing tunnel binding: {e}")
        self.bound_port = None

        if self.session is not None:
            self.session.close()
            self.session = None
        if self.ssh_client is not None:
            self.ssh_client.close()
            self.ssh_client = None
            self.transport = None
            logger.info("✓ Disconnected")

        if self.server is not None:
            if self._server_thread is not None:
                self.server.shutdown()
                self._server_thread = None
            self.server.server_close()
            self.server = None
