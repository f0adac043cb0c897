"""Establishes outbound TLS connections for an HTTP client transport."""

from __future__ import annotations

import logging
import socket
import threading

from .stdlib import STDLIB_BACKEND, OpenSSLTLSConnection
from .tlspolicy import (
    CERTIFICATE_REJECTED,
    INVALID_CONFIGURATION,
    NO_SUPPORTED_PROTOCOL,
    Backend,
    CertificateRejected,
    ConnectionCancelled,
    ConnectionClosed,
    ConnectionFailure,
    DestinationUnreachable,
    HandshakeOutcome,
    HandshakeTimeout,
    InvalidConfiguration,
    Negotiated,
    NegotiationMismatch,
    PeerClosedConnection,
    Rejected,
    TimedOut,
    TLSVersion,
    TransportTLSOptions,
    UnsupportedProtocolSet,
)

__all__ = ["TLSTransport", "negotiated_protocol"]

logger = logging.getLogger(__name__)


def _failure_from_outcome(outcome: HandshakeOutcome) -> ConnectionFailure:
    """Maps an unsuccessful handshake outcome onto the error taxonomy."""
    error: ConnectionFailure
    if isinstance(outcome, Rejected):
        if outcome.reason == NO_SUPPORTED_PROTOCOL:
            error = UnsupportedProtocolSet(
                "None of the enabled protocols is supported on this platform", outcome
            )
        elif outcome.reason == CERTIFICATE_REJECTED:
            error = CertificateRejected("The peer certificate was rejected", outcome)
        elif outcome.reason == INVALID_CONFIGURATION:
            error = InvalidConfiguration(
                f"The TLS configuration could not be applied: {outcome.detail}", outcome
            )
        else:
            error = NegotiationMismatch(
                f"The TLS handshake was rejected: {outcome.reason}", outcome
            )
    elif isinstance(outcome, TimedOut):
        error = HandshakeTimeout("The TLS handshake timed out", outcome)
    elif isinstance(outcome, ConnectionClosed):
        error = PeerClosedConnection(
            "The connection was closed during the TLS handshake", outcome
        )
    else:
        raise TypeError(f"Unexpected handshake outcome {outcome!r}")

    # Keep the platform's own message reachable without flattening the kind.
    error.__cause__ = outcome.detail
    return error


class TLSTransport:
    """
    Opens TLS connections under the policy held in ``options``.

    The options are frozen by the first call to ``connect``. Each call takes
    its own snapshot, performs exactly one handshake and either returns a
    connection or raises a single ``ConnectionFailure``. Nothing is retried.
    """

    def __init__(
        self,
        options: TransportTLSOptions | None = None,
        backend: Backend = STDLIB_BACKEND,
    ) -> None:
        if options is None:
            options = TransportTLSOptions()
        self._options = options
        self._backend = backend
        self._lock = threading.Lock()
        self._closed = False
        # Duplicates of the raw sockets of attempts still in progress.
        self._pending: set[socket.socket] = set()

    @property
    def options(self) -> TransportTLSOptions:
        return self._options

    @property
    def backend(self) -> Backend:
        return self._backend

    @property
    def closed(self) -> bool:
        return self._closed

    def connect(
        self, address: tuple[str, int], server_hostname: str | None = None
    ) -> OpenSSLTLSConnection:
        """
        Opens a TLS connection to ``address``.

        ``server_hostname`` defaults to the host part of the address and is
        used for SNI and certificate validation.
        """
        if server_hostname is None:
            server_hostname = address[0]

        with self._lock:
            if self._closed:
                raise ConnectionCancelled("The transport has been closed")

        try:
            sock = socket.create_connection(address, timeout=self._options.connect_timeout)
        except OSError as e:
            raise DestinationUnreachable(f"Could not connect to {address!r}: {e}") from e

        try:
            return self._establish(sock, server_hostname)
        finally:
            # Either detached by the TLS wrapper or left over after a failure.
            sock.close()

    def _establish(self, sock: socket.socket, server_hostname: str) -> OpenSSLTLSConnection:
        configuration = self._options.snapshot()

        watch = self._register(sock)
        try:
            outcome = self._backend.handshaker.handshake(sock, server_hostname, configuration)
        finally:
            cancelled = self._unregister(watch)

        if cancelled:
            if isinstance(outcome, Negotiated):
                outcome.connection.close()
            raise ConnectionCancelled(
                "The transport was closed during the handshake", outcome
            ) from outcome.detail

        if isinstance(outcome, Negotiated):
            return outcome.connection

        error = _failure_from_outcome(outcome)
        logger.debug("Connection to %s failed: %r", server_hostname, outcome)
        raise error

    def _register(self, sock: socket.socket) -> socket.socket:
        watch = sock.dup()
        with self._lock:
            if self._closed:
                watch.close()
                raise ConnectionCancelled("The transport has been closed")
            self._pending.add(watch)
        return watch

    def _unregister(self, watch: socket.socket) -> bool:
        with self._lock:
            self._pending.discard(watch)
            watch.close()
            return self._closed

    def close(self) -> None:
        """
        Closes the transport. Handshakes still in progress are aborted and
        fail with ``ConnectionCancelled``; later calls to ``connect`` fail
        the same way. Connections already returned stay open.
        """
        with self._lock:
            self._closed = True
            for watch in self._pending:
                # A shutdown reaches the TLS wrapper through the shared socket.
                try:
                    watch.shutdown(socket.SHUT_RDWR)
                except OSError:
                    logger.debug("Pending socket was already gone")

    def __enter__(self) -> TLSTransport:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


def negotiated_protocol(connection: OpenSSLTLSConnection) -> TLSVersion:
    """The protocol version negotiated for ``connection``."""
    return connection.negotiated_tls_version
