"""Where and how the load measurer connects.

A Target keeps the logical hostname (used for SNI, certificate matching and
the ``Host`` header) apart from the address the socket actually dials,
which comes from a Resolver.
"""

import http.client
import ipaddress
import logging
import os
import socket
import ssl
from dataclasses import dataclass
from typing import Dict, Optional, Tuple
from urllib.parse import urlsplit

from tunnel_bench.errors import ConfigurationError

logger = logging.getLogger("tunnel-bench")

Address = Tuple[str, int]

DEFAULT_PORTS = {"http": 80, "https": 443}


def parse_host_ip(value: str) -> Address:
    """Parse an ``IP:PORT`` override (``[IPv6]:PORT`` for IPv6)."""
    host, sep, port_str = value.strip().rpartition(":")
    if not sep or not host:
        raise ConfigurationError(f"Invalid host IP {value!r}. Use format IP:PORT (e.g., 127.0.0.1:13133)")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    try:
        ip = ipaddress.ip_address(host)
        port = int(port_str)
    except ValueError:
        raise ConfigurationError(f"Invalid host IP {value!r}. Use format IP:PORT (e.g., 127.0.0.1:13133)") from None
    if not 0 < port < 65536:
        raise ConfigurationError(f"Invalid port in host IP {value!r}")
    return str(ip), port


class Resolver:
    """Maps a logical (hostname, port) to the address a socket connects to."""

    def resolve(self, host: str, port: int) -> Address:
        raise NotImplementedError


class SystemResolver(Resolver):
    """Regular name resolution through getaddrinfo."""

    def resolve(self, host: str, port: int) -> Address:
        infos = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)
        sockaddr = infos[0][4]
        return sockaddr[0], sockaddr[1]


class StaticResolver(Resolver):
    """Fixed hostname -> address table; other names go to the fallback."""

    def __init__(self, overrides: Dict[str, Address], fallback: Optional[Resolver] = None):
        self._overrides = {host.lower(): address for host, address in overrides.items()}
        self.fallback = fallback or SystemResolver()

    def resolve(self, host: str, port: int) -> Address:
        address = self._overrides.get(host.lower())
        if address is None:
            return self.fallback.resolve(host, port)
        return address


def build_ssl_context(ca_cert: Optional[str] = None, ca_only: bool = False) -> ssl.SSLContext:
    """Client TLS context that verifies the chain and the hostname.

    ``ca_cert`` is added to the system roots, or replaces them when
    ``ca_only`` is set.
    """
    if ca_only:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    else:
        context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    if ca_cert:
        try:
            context.load_verify_locations(cafile=ca_cert)
        except OSError as e:
            raise ConfigurationError(f"Invalid CA certificate {ca_cert}: {e}") from e
    context.set_alpn_protocols(["http/1.1"])
    return context


@dataclass(frozen=True)
class Target:
    """The tunnel's public endpoint as seen by the measurer."""

    scheme: str
    hostname: str
    port: int
    base_path: str = ""
    host_ip: Optional[Address] = None
    ca_cert: Optional[str] = None
    ca_only: bool = False

    @classmethod
    def from_url(
        cls,
        url: str,
        host_ip: Optional[str] = None,
        ca_cert: Optional[str] = None,
        ca_only: bool = False,
    ) -> "Target":
        parts = urlsplit(url)
        scheme = parts.scheme.lower()
        if scheme not in DEFAULT_PORTS:
            raise ConfigurationError(f"Unsupported URL scheme in {url!r} (use https:// or http://)")
        if not parts.hostname:
            raise ConfigurationError(f"Missing hostname in {url!r}")
        try:
            parts.hostname.encode("idna")
        except UnicodeError:
            raise ConfigurationError(f"Invalid hostname in {url!r}") from None
        try:
            port = parts.port or DEFAULT_PORTS[scheme]
        except ValueError:
            raise ConfigurationError(f"Invalid port in {url!r}") from None

        if ca_cert is not None and not os.path.isfile(ca_cert):
            raise ConfigurationError(f"CA certificate not found: {ca_cert}")
        if ca_only and ca_cert is None:
            raise ConfigurationError("--ca-only requires --custom-ca-cert")
        if ca_cert is not None and scheme == "http":
            logger.warning("Ignoring custom CA certificate for plain HTTP target")

        return cls(
            scheme=scheme,
            hostname=parts.hostname,
            port=port,
            base_path=parts.path.rstrip("/"),
            host_ip=parse_host_ip(host_ip) if host_ip else None,
            ca_cert=ca_cert,
            ca_only=ca_only,
        )

    @property
    def is_tls(self) -> bool:
        return self.scheme == "https"

    @property
    def url(self) -> str:
        host = f"[{self.hostname}]" if ":" in self.hostname else self.hostname
        return f"{self.scheme}://{host}:{self.port}{self.base_path}"

    def build_resolver(self) -> Resolver:
        if self.host_ip is None:
            return SystemResolver()
        return StaticResolver({self.hostname: self.host_ip})

    def build_ssl_context(self) -> Optional[ssl.SSLContext]:
        if not self.is_tls:
            return None
        return build_ssl_context(self.ca_cert, self.ca_only)


class TargetHTTPConnection(http.client.HTTPConnection):
    """HTTP/1.1 connection that asks a Resolver where to dial."""

    def __init__(self, host: str, port: int, resolver: Resolver, timeout: float):
        super().__init__(host, port, timeout=timeout)
        self.resolver = resolver

    def _open_socket(self) -> socket.socket:
        address = self.resolver.resolve(self.host, self.port)
        sock = socket.create_connection(address, self.timeout)
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
        return sock

    def connect(self):
        self.sock = self._open_socket()

    def abort(self) -> None:
        """Shut the socket down from another thread; a blocked read returns at once."""
        sock = self.sock
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            logger.debug(f"Abort on a closed socket: {e}")


class TargetHTTPSConnection(TargetHTTPConnection):
    """Dials the resolved address but presents the logical hostname for TLS."""

    default_port = http.client.HTTPS_PORT

    def __init__(self, host: str, port: int, resolver: Resolver, context: ssl.SSLContext, timeout: float):
        super().__init__(host, port, resolver, timeout)
        self.context = context

    def connect(self):
        # The handshake runs on self.sock so abort() can interrupt it
        self.sock = self._open_socket()
        try:
            self.sock = self.context.wrap_socket(self.sock, server_hostname=self.host, do_handshake_on_connect=False)
            self.sock.do_handshake()
        except BaseException:
            self.sock.close()
            self.sock = None
            raise


def new_connection(
    target: Target,
    resolver: Resolver,
    context: Optional[ssl.SSLContext],
    timeout: float,
) -> TargetHTTPConnection:
    """Create an unconnected connection; it dials on the first request."""
    if target.is_tls:
        return TargetHTTPSConnection(target.hostname, target.port, resolver, context, timeout)
    return TargetHTTPConnection(target.hostname, target.port, resolver, timeout)
