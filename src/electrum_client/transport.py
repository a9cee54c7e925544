"""
electrum_client/transport.py

Low-level TCP, SSL and SOCKS connection handling for Electrum servers.

Each connector turns an Endpoint into a DuplexStream. The engine above this
module only ever sees the DuplexStream interface, so it does not care whether
the bytes travel in plaintext, over TLS, or through a Tor tunnel.
"""

import logging
import socket
import ssl
from typing import Callable, Dict, Optional, Protocol

from python_socks import ProxyConnectionError, ProxyError, ProxyTimeoutError, ProxyType
from python_socks.sync import Proxy

from .config import DEFAULT_CONNECT_TIMEOUT, Endpoint, TransportMode
from .errors import ConnectError

logger = logging.getLogger("electrum_client.transport")


class DuplexStream(Protocol):
    """Byte stream whose read and write halves can be used from different threads."""

    def read(self, size: int) -> bytes:
        """Block until at least one byte is available; b"" means EOF."""
        ...

    def write(self, data: bytes) -> None:
        """Write every byte of data or raise OSError."""
        ...

    def close(self) -> None:
        ...


class SocketStream:
    """
    DuplexStream over a connected (plain, TLS or tunnelled) socket.

    Reads and writes may run concurrently from two threads; the engine
    guarantees at most one reader and serializes writers.
    """

    BUFFER_SIZE = 4096

    def __init__(self, sock: socket.socket, description: str = ""):
        self._sock = sock
        self.description = description
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def read(self, size: int = BUFFER_SIZE) -> bytes:
        return self._sock.recv(size)

    def write(self, data: bytes) -> None:
        self._sock.sendall(data)

    def close(self) -> None:
        """Close the socket, unblocking a thread stuck in read()."""
        if self._closed:
            return
        self._closed = True

        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Already disconnected by the peer
            pass
        try:
            self._sock.close()
        except OSError as e:
            logger.debug(f"Error closing {self.description}: {e}")

    def __repr__(self) -> str:
        return f"SocketStream({self.description!r}, closed={self._closed})"


# ============================================================================
# CONNECTORS
# ============================================================================

def _ssl_context(validate_domain: bool) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not validate_domain:
        # Electrum servers commonly run with self-signed certificates
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


def _wrap_tls(sock: socket.socket, endpoint: Endpoint, timeout: float) -> ssl.SSLSocket:
    """Perform the TLS handshake on an already connected socket."""
    if not endpoint.validate_domain:
        logger.warning(f"TLS certificate validation disabled for {endpoint.address}")

    context = _ssl_context(endpoint.validate_domain)
    sock.settimeout(timeout)
    try:
        ssl_sock = context.wrap_socket(sock, server_hostname=endpoint.host)
    except (ssl.SSLError, ssl.CertificateError, OSError) as e:
        sock.close()
        raise ConnectError(f"TLS handshake with {endpoint.address} failed: {e}") from e
    return ssl_sock


def _finish(sock: socket.socket, endpoint: Endpoint) -> SocketStream:
    # Timeouts only govern connecting; reads block until data or close
    sock.settimeout(None)
    return SocketStream(sock, description=str(endpoint))


def connect_tcp(endpoint: Endpoint, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> SocketStream:
    """Open a plaintext TCP stream."""
    try:
        sock = socket.create_connection((endpoint.host, endpoint.port), timeout=timeout)
    except OSError as e:
        raise ConnectError(f"Connection to {endpoint.address} failed: {e}") from e

    logger.debug(f"TCP connection established to {endpoint.address}")
    return _finish(sock, endpoint)


def connect_ssl(endpoint: Endpoint, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> SocketStream:
    """Open a TCP stream and perform the TLS handshake."""
    try:
        sock = socket.create_connection((endpoint.host, endpoint.port), timeout=timeout)
    except OSError as e:
        raise ConnectError(f"Connection to {endpoint.address} failed: {e}") from e

    ssl_sock = _wrap_tls(sock, endpoint, timeout)
    logger.debug(f"SSL connection established to {endpoint.address}")
    return _finish(ssl_sock, endpoint)


def connect_socks(endpoint: Endpoint, timeout: float = DEFAULT_CONNECT_TIMEOUT) -> SocketStream:
    """
    Tunnel through a SOCKS5 proxy, then optionally perform the TLS handshake.

    The proxy resolves the target hostname (remote DNS), which is what makes
    onion-service endpoints reachable.
    """
    proxy_config = endpoint.proxy
    if proxy_config is None:
        raise ConnectError(f"No proxy configured for {endpoint.address}")

    proxy = Proxy.create(
        proxy_type=ProxyType.SOCKS5,
        host=proxy_config.host,
        port=proxy_config.port,
        username=proxy_config.username,
        password=proxy_config.password,
        rdns=True,
    )
    try:
        sock = proxy.connect(dest_host=endpoint.host, dest_port=endpoint.port, timeout=timeout)
    except (ProxyError, ProxyTimeoutError, ProxyConnectionError, OSError) as e:
        raise ConnectError(
            f"Proxy connection to {endpoint.address} via "
            f"{proxy_config.host}:{proxy_config.port} failed: {e}"
        ) from e

    if endpoint.mode is TransportMode.SSL:
        sock = _wrap_tls(sock, endpoint, timeout)

    logger.debug(f"Proxied connection established to {endpoint}")
    return _finish(sock, endpoint)


Connector = Callable[[Endpoint, float], SocketStream]

CONNECTORS: Dict[TransportMode, Connector] = {
    TransportMode.TCP: connect_tcp,
    TransportMode.SSL: connect_ssl,
}


def select_connector(endpoint: Endpoint) -> Connector:
    """Pick the connector for an endpoint's configuration."""
    if endpoint.proxy is not None:
        return connect_socks
    if endpoint.is_onion:
        raise ConnectError(f"{endpoint.host} is an onion address and needs a SOCKS proxy")
    return CONNECTORS[endpoint.mode]


def open_stream(endpoint: Endpoint, timeout: Optional[float] = None) -> SocketStream:
    """
    Connect to an endpoint using the transport its configuration selects.

    Raises:
        ConnectError: On DNS, refusal, TLS or proxy handshake failure
    """
    connector = select_connector(endpoint)
    logger.info(f"Connecting to Electrum server {endpoint}...")
    return connector(endpoint, DEFAULT_CONNECT_TIMEOUT if timeout is None else timeout)
