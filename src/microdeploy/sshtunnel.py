"""SSH tunnel module.

Reverse SSH tunnel from a deployed VM back to the deployer:
connections to remote_forward_port on the VM are forwarded to
127.0.0.1:local_forward_port on this machine.

- SSHTunnelOptions: connection parameters; all-empty means "no tunnel"
- SSHTunnel: one paramiko-backed tunnel with start()/stop()
- SSHTunnelFactory: builds tunnels from options
- open_ssh_tunnel: context manager guaranteeing stop() on every exit path

Security:
- Passwords and key material never logged
- Local side connects to 127.0.0.1 only
"""

import logging
import select
import socket
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, fields
from datetime import timedelta
from typing import Protocol

import paramiko

from microdeploy.retry import RetryError, TimeoutRetryStrategy

logger = logging.getLogger(__name__)


class SSHTunnelError(Exception):
    """Raised when an SSH tunnel cannot be started."""

    pass


@dataclass(frozen=True)
class SSHTunnelOptions:
    """SSH tunnel connection parameters."""

    host: str = ""
    port: int = 0
    user: str = ""
    password: str = ""
    private_key: str = ""  # path to private key file
    local_forward_port: int = 0
    remote_forward_port: int = 0

    def is_empty(self) -> bool:
        """True when no field is set, meaning no tunnel was requested."""
        return all(not getattr(self, f.name) for f in fields(self))

    def __repr__(self) -> str:
        # Keep credentials out of reprs that end up in logs and tracebacks
        return (
            f"SSHTunnelOptions(host={self.host!r}, port={self.port}, user={self.user!r}, "
            f"local_forward_port={self.local_forward_port}, "
            f"remote_forward_port={self.remote_forward_port})"
        )


class Tunnel(Protocol):
    def start(self) -> None: ...

    def stop(self) -> None: ...


class TunnelFactory(Protocol):
    def new_ssh_tunnel(self, options: SSHTunnelOptions) -> Tunnel: ...


def _sanitize_tunnel_error(error: Exception) -> str:
    """Map connection errors to messages safe for user display."""
    if isinstance(error, paramiko.AuthenticationException):
        return "Authentication failed"
    if isinstance(error, socket.timeout):
        return "Network connectivity issue"
    if isinstance(error, ConnectionRefusedError):
        return "Connection refused"
    if isinstance(error, paramiko.SSHException):
        return f"SSH negotiation failed: {error}"
    if isinstance(error, OSError):
        return f"Network error: {error.strerror or error}"
    logger.debug(f"Tunnel error details: {error}")
    return "Tunnel creation failed"


class SSHTunnel:
    """Reverse port forward over one SSH connection."""

    DEFAULT_CONNECT_TIMEOUT = timedelta(minutes=5)
    DEFAULT_CONNECT_DELAY = timedelta(milliseconds=500)
    SOCKET_TIMEOUT = 30
    BUFFER_SIZE = 32768

    def __init__(
        self,
        options: SSHTunnelOptions,
        connect_timeout: timedelta = DEFAULT_CONNECT_TIMEOUT,
        connect_delay: timedelta = DEFAULT_CONNECT_DELAY,
        client_factory=paramiko.SSHClient,
    ):
        self._validate_options(options)
        self.options = options
        self.connect_timeout = connect_timeout
        self.connect_delay = connect_delay
        self.client_factory = client_factory
        self.client: paramiko.SSHClient | None = None
        self._stopped = threading.Event()
        self._threads: list[threading.Thread] = []

    @staticmethod
    def _validate_options(options: SSHTunnelOptions) -> None:
        if not options.host:
            raise SSHTunnelError("SSH tunnel host cannot be empty")
        if not options.user:
            raise SSHTunnelError("SSH tunnel user cannot be empty")
        if not options.password and not options.private_key:
            raise SSHTunnelError("SSH tunnel requires a password or a private key")
        for name in ("port", "local_forward_port", "remote_forward_port"):
            value = getattr(options, name)
            if not isinstance(value, int) or value < 1 or value > 65535:
                raise SSHTunnelError(
                    f"Invalid port number for {name}: {value}\nPort must be between 1 and 65535"
                )

    def start(self) -> None:
        """Connect and request the remote port forward.

        Retries the SSH connection until connect_timeout, since the VM may
        still be booting. Authentication failures are not retried.

        Raises:
            SSHTunnelError: If the tunnel cannot be established
        """
        opts = self.options
        logger.info(
            f"Starting SSH tunnel to {opts.user}@{opts.host}:{opts.port} "
            f"(remote :{opts.remote_forward_port} -> 127.0.0.1:{opts.local_forward_port})"
        )
        self._stopped.clear()

        strategy = TimeoutRetryStrategy(
            timeout=self.connect_timeout,
            delay=self.connect_delay,
            retryable=(paramiko.SSHException, OSError),
            name=f"SSH connection to {opts.host}:{opts.port}",
        )

        try:
            strategy.try_(self._connect)
        except RetryError as e:
            cause = e.__cause__ if isinstance(e.__cause__, Exception) else e
            raise SSHTunnelError(
                f"Starting SSH tunnel to {opts.host}:{opts.port}: {_sanitize_tunnel_error(cause)}"
            ) from e

        try:
            transport = self.client.get_transport()
            transport.request_port_forward(
                "", opts.remote_forward_port, handler=self._handle_channel
            )
        except paramiko.SSHException as e:
            self._close_client()
            raise SSHTunnelError(
                f"Requesting remote port forward on :{opts.remote_forward_port}: {e}"
            ) from e

        logger.info(f"SSH tunnel started to {opts.host}:{opts.port}")

    def stop(self) -> None:
        """Cancel the forward and close the connection. Safe to call twice."""
        if self.client is None:
            return

        logger.info(f"Stopping SSH tunnel to {self.options.host}:{self.options.port}")
        self._stopped.set()

        transport = self.client.get_transport()
        if transport is not None and transport.is_active():
            try:
                transport.cancel_port_forward("", self.options.remote_forward_port)
            except paramiko.SSHException as e:
                logger.debug(f"Cancel port forward failed: {e}")

        self._close_client()

        for thread in self._threads:
            thread.join(timeout=2)
        self._threads.clear()

    def _connect(self) -> bool:
        opts = self.options
        client = self.client_factory()
        # Freshly provisioned VMs have unknown host keys
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())  # nosec B507
        try:
            client.connect(
                hostname=opts.host,
                port=opts.port,
                username=opts.user,
                password=opts.password or None,
                key_filename=opts.private_key or None,
                timeout=self.SOCKET_TIMEOUT,
                allow_agent=False,
                look_for_keys=False,
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise SSHTunnelError(
                f"Starting SSH tunnel to {opts.host}:{opts.port}: {_sanitize_tunnel_error(e)}"
            ) from e
        except Exception:
            client.close()
            raise

        self.client = client
        return True

    def _close_client(self) -> None:
        if self.client is not None:
            self.client.close()
            self.client = None

    def _handle_channel(self, channel, origin, server) -> None:
        """Forward one incoming channel to the local port."""
        local_port = self.options.local_forward_port
        try:
            sock = socket.create_connection(("127.0.0.1", local_port), timeout=self.SOCKET_TIMEOUT)
        except OSError as e:
            logger.warning(f"Forwarding to 127.0.0.1:{local_port} failed: {e}")
            channel.close()
            return

        logger.debug(f"Tunnel connection from {origin} to 127.0.0.1:{local_port}")
        thread = threading.Thread(target=self._pipe, args=(channel, sock), daemon=True)
        self._threads.append(thread)
        thread.start()

    def _pipe(self, channel, sock: socket.socket) -> None:
        try:
            while not self._stopped.is_set():
                readable, _, _ = select.select([sock, channel], [], [], 1.0)
                if sock in readable:
                    data = sock.recv(self.BUFFER_SIZE)
                    if not data:
                        break
                    channel.sendall(data)
                if channel in readable:
                    data = channel.recv(self.BUFFER_SIZE)
                    if not data:
                        break
                    sock.sendall(data)
        except OSError as e:
            logger.debug(f"Tunnel connection closed: {e}")
        finally:
            channel.close()
            sock.close()


class SSHTunnelFactory:
    def __init__(self, connect_timeout: timedelta = SSHTunnel.DEFAULT_CONNECT_TIMEOUT):
        self.connect_timeout = connect_timeout

    def new_ssh_tunnel(self, options: SSHTunnelOptions) -> SSHTunnel:
        return SSHTunnel(options, connect_timeout=self.connect_timeout)


@contextmanager
def open_ssh_tunnel(factory: TunnelFactory, options: SSHTunnelOptions) -> Iterator[Tunnel | None]:
    """Start a tunnel for the duration of a with block.

    Yields None without starting anything when options are empty. A tunnel
    that fails to start is not stopped; one that started is always stopped.

    Raises:
        SSHTunnelError: If the tunnel cannot be started
    """
    if options.is_empty():
        logger.debug("No SSH tunnel options; skipping tunnel")
        yield None
        return

    tunnel = factory.new_ssh_tunnel(options)
    tunnel.start()
    try:
        yield tunnel
    finally:
        tunnel.stop()


__all__ = [
    "SSHTunnel",
    "SSHTunnelError",
    "SSHTunnelFactory",
    "SSHTunnelOptions",
    "Tunnel",
    "TunnelFactory",
    "open_ssh_tunnel",
]
