"""Drives the standard library OpenSSL module under a protocol-version policy."""

from __future__ import annotations

import logging
import socket
import ssl
import typing
import warnings
from contextlib import contextmanager

import truststore

from .tlspolicy import (
    CERTIFICATE_REJECTED,
    INVALID_CONFIGURATION,
    NO_SUPPORTED_PROTOCOL,
    Backend,
    CertificateInfo,
    ConnectionClosed,
    HandshakeOutcome,
    Negotiated,
    ProtocolSet,
    RaggedEOF,
    Rejected,
    TimedOut,
    TLSClientConfiguration,
    TLSError,
    TLSVersion,
)

logger = logging.getLogger(__name__)

_SSLContext = ssl.SSLContext | truststore.SSLContext

#: The versions negotiated when a transport requests no explicit restriction.
#: Legacy SSL and TLS v1.0/v1.1 are only used when asked for by name.
DEFAULT_PROTOCOLS = ProtocolSet(TLSVersion.TLSv1_2, TLSVersion.TLSv1_3)

# SSLv2 has no counterpart here; OpenSSL dropped it entirely.
_TLSVersionOpts = {
    TLSVersion.SSLv3: ssl.TLSVersion.SSLv3,
    TLSVersion.TLSv1: ssl.TLSVersion.TLSv1,
    TLSVersion.TLSv1_1: ssl.TLSVersion.TLSv1_1,
    TLSVersion.TLSv1_2: ssl.TLSVersion.TLSv1_2,
    TLSVersion.TLSv1_3: ssl.TLSVersion.TLSv1_3,
}

_TLSDisableOpts = {
    TLSVersion.SSLv3: ssl.OP_NO_SSLv3,
    TLSVersion.TLSv1: ssl.OP_NO_TLSv1,
    TLSVersion.TLSv1_1: ssl.OP_NO_TLSv1_1,
    TLSVersion.TLSv1_2: ssl.OP_NO_TLSv1_2,
    TLSVersion.TLSv1_3: ssl.OP_NO_TLSv1_3,
}

_TLSAvailable = {
    TLSVersion.SSLv2: ssl.HAS_SSLv2,
    TLSVersion.SSLv3: ssl.HAS_SSLv3,
    TLSVersion.TLSv1: ssl.HAS_TLSv1,
    TLSVersion.TLSv1_1: ssl.HAS_TLSv1_1,
    TLSVersion.TLSv1_2: ssl.HAS_TLSv1_2,
    TLSVersion.TLSv1_3: ssl.HAS_TLSv1_3,
}

_LEGACY_VERSIONS = frozenset({TLSVersion.SSLv3, TLSVersion.TLSv1, TLSVersion.TLSv1_1})

# Errors meaning the stream went away without a TLS alert.
_CLOSED_ERRORS = (
    ssl.SSLEOFError,
    ssl.SSLZeroReturnError,
    ssl.SSLSyscallError,
    ConnectionResetError,
    ConnectionAbortedError,
    BrokenPipeError,
)


@contextmanager
def _error_converter(
    ignore_filter: tuple[type[Exception]] | tuple[()] = (),
) -> typing.Generator[None, None, None]:
    """
    Catches errors from the ssl module on an established connection and
    wraps them up in TLSError exceptions. Ignores certain kinds of
    exceptions as requested.
    """
    try:
        yield
    except ignore_filter:
        pass
    except ssl.SSLEOFError as e:
        raise RaggedEOF("Ragged EOF") from e
    except ssl.SSLError as e:
        raise TLSError(e) from e


def _outcome_from_error(exc: OSError) -> HandshakeOutcome:
    """Classifies an exception raised while handshaking."""
    if isinstance(exc, TimeoutError):
        return TimedOut(exc)
    if isinstance(exc, _CLOSED_ERRORS):
        return ConnectionClosed(exc)
    if isinstance(exc, ssl.SSLCertVerificationError):
        return Rejected(CERTIFICATE_REJECTED, exc)
    if isinstance(exc, ssl.SSLError):
        return Rejected(getattr(exc, "reason", None) or str(exc), exc)
    # Anything else at the socket level, e.g. a descriptor closed under us.
    return ConnectionClosed(exc)


def _create_client_context(configuration: TLSClientConfiguration) -> _SSLContext:
    some_context: _SSLContext
    trust_store = configuration.trust_store

    if configuration.certificate_validator is not None:
        # The validator takes over; OpenSSL must not reject the peer first.
        some_context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        some_context.check_hostname = False
        some_context.verify_mode = ssl.CERT_NONE
    elif trust_store is None or trust_store.is_system:
        some_context = truststore.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
    else:
        some_context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        if trust_store._path is not None:
            some_context.load_verify_locations(cafile=trust_store._path)
        else:
            assert trust_store._buffer is not None
            some_context.load_verify_locations(cadata=trust_store._buffer.decode("ascii"))

    # TLS Compression is a security risk and is removed in TLS v1.3
    some_context.options |= ssl.OP_NO_COMPRESSION

    if some_context.verify_mode != ssl.CERT_NONE:
        some_context.verify_flags = (
            ssl.VerifyFlags.VERIFY_X509_STRICT | ssl.VerifyFlags.VERIFY_X509_PARTIAL_CHAIN
        )

    return some_context


def _configure_context_for_versions(context: _SSLContext, allowed: ProtocolSet) -> _SSLContext:
    """Restricts the SSLContext to exactly the versions in ``allowed``.

    Returns the context.
    """
    versions = allowed.versions
    assert versions, "allowed versions must not be empty"
    lowest, highest = versions[0], versions[-1]

    ordered = list(TLSVersion)
    holes = [
        v
        for v in ordered[ordered.index(lowest) + 1 : ordered.index(highest)]
        if v not in allowed
    ]
    disabled = 0
    for version in holes:
        disabled |= _TLSDisableOpts[version]

    # Legacy versions and the OP_NO_* flags are deprecated, yet they are the
    # only way to honor a request for old versions or a set with a hole.
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", DeprecationWarning)
        context.minimum_version = _TLSVersionOpts[lowest]
        context.maximum_version = _TLSVersionOpts[highest]
        if disabled:
            context.options |= disabled

    if lowest in _LEGACY_VERSIONS:
        # OpenSSL 3 refuses legacy versions at the default security level.
        context.set_ciphers("DEFAULT:@SECLEVEL=0")

    return context


def _init_context_client(
    configuration: TLSClientConfiguration, allowed: ProtocolSet
) -> _SSLContext:
    """Initialize an SSL context object with a given client configuration."""
    some_context = _create_client_context(configuration)
    return _configure_context_for_versions(some_context, allowed)


class OpenSSLTLSConnection:
    """An established TLS connection based on OpenSSL."""

    __slots__ = (
        "_socket",
        "_configuration",
        "_tls_version",
    )

    _socket: ssl.SSLSocket
    _configuration: TLSClientConfiguration
    _tls_version: TLSVersion

    def __init__(self, *args: tuple, **kwargs: tuple) -> None:
        """OpenSSLTLSConnections should not be constructed by the user.
        Instances are returned by TLSTransport.connect()."""
        msg = (
            f"{self.__class__.__name__} does not have a public constructor. "
            "Instances are returned by TLSTransport.connect()."
        )
        raise TypeError(
            msg,
        )

    @classmethod
    def _create(
        cls,
        sock: ssl.SSLSocket,
        configuration: TLSClientConfiguration,
        tls_version: TLSVersion,
    ) -> OpenSSLTLSConnection:
        self = cls.__new__(cls)
        self._socket = sock
        self._configuration = configuration
        self._tls_version = tls_version
        return self

    def recv(self, bufsize: int) -> bytes:
        """Receive data from the connection. Returns ``b""`` once the peer
        has shut down the TLS session."""
        with _error_converter():
            try:
                return self._socket.recv(bufsize)
            except ssl.SSLZeroReturnError:
                return b""

    def send(self, data: bytes) -> int:
        """Send data over the connection, returning the number of bytes sent."""
        with _error_converter():
            return self._socket.send(data)

    def sendall(self, data: bytes) -> None:
        with _error_converter():
            self._socket.sendall(data)

    def settimeout(self, timeout: float | None) -> None:
        self._socket.settimeout(timeout)

    def close(self) -> None:
        """Shuts down both halves of the connection and closes the socket."""

        # NOTE: OSError indicates that the other side has already hung up.
        with _error_converter(ignore_filter=(OSError,)):
            self._socket.shutdown(socket.SHUT_RDWR)
        self._socket.close()

    def getpeername(self) -> socket._RetAddress:
        """Return the remote address to which the connection is made."""

        with _error_converter():
            return self._socket.getpeername()

    def getpeercert(self) -> bytes | None:
        """
        Return the raw DER bytes of the certificate provided by the peer
        during the handshake, if applicable.
        """
        with _error_converter():
            return self._socket.getpeercert(True)

    def fileno(self) -> int:
        """Return the socket's file descriptor (a small integer), or -1 once closed."""

        return self._socket.fileno()

    def cipher(self) -> str | None:
        """The OpenSSL name of the negotiated cipher, or None once closed."""

        ret = self._socket.cipher()
        if ret is None:
            return None
        return ret[0]

    @property
    def configuration(self) -> TLSClientConfiguration:
        """The configuration snapshot this connection was established with."""

        return self._configuration

    @property
    def negotiated_tls_version(self) -> TLSVersion:
        """The version of TLS that was negotiated on this connection. It
        stays available after the connection is closed."""

        return self._tls_version

    def __enter__(self) -> OpenSSLTLSConnection:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()


class OpenSSLHandshaker:
    """Performs client handshakes with the standard library ssl module."""

    def __init__(self, default_protocols: ProtocolSet = DEFAULT_PROTOCOLS) -> None:
        self._default_protocols = default_protocols

    @property
    def default_protocols(self) -> ProtocolSet:
        """The versions used when a configuration requests none explicitly."""
        return self._default_protocols

    def supported_versions(self) -> ProtocolSet:
        """The versions the linked OpenSSL is able to perform."""
        return ProtocolSet(*(v for v, has in _TLSAvailable.items() if has and v in _TLSVersionOpts))

    def allowed_versions(self, configuration: TLSClientConfiguration) -> ProtocolSet:
        """The versions a handshake under ``configuration`` may negotiate."""
        requested = configuration.enabled_protocols
        if requested.is_empty():
            requested = self._default_protocols
        return requested.intersection(self.supported_versions())

    def handshake(
        self,
        sock: socket.socket,
        server_hostname: str | None,
        configuration: TLSClientConfiguration,
    ) -> HandshakeOutcome:
        """
        Performs one client handshake over ``sock``. On success the returned
        ``Negotiated`` outcome owns the wrapped socket. On failure the
        wrapped socket is closed; the caller still owns ``sock``.
        """
        allowed = self.allowed_versions(configuration)
        if allowed.is_empty():
            logger.debug(
                "None of %r can be used; this platform supports %r",
                configuration.enabled_protocols,
                self.supported_versions(),
            )
            return Rejected(NO_SUPPORTED_PROTOCOL)

        # A trust store that is not ASCII PEM fails with UnicodeDecodeError.
        try:
            context = _init_context_client(configuration, allowed)
        except (OSError, ValueError) as e:
            logger.debug("Cannot apply TLS configuration: %s", e)
            return Rejected(INVALID_CONFIGURATION, e)

        sock.settimeout(configuration.handshake_timeout)
        try:
            tls_sock = context.wrap_socket(
                sock, server_hostname=server_hostname, do_handshake_on_connect=False
            )
        except OSError as e:
            return _outcome_from_error(e)
        except ValueError as e:
            # Raised before the socket is detached, e.g. hostname checking
            # without a hostname.
            logger.debug("Cannot wrap socket for %r: %s", server_hostname, e)
            return Rejected(INVALID_CONFIGURATION, e)

        try:
            tls_sock.do_handshake()
        except OSError as e:
            tls_sock.close()
            outcome = _outcome_from_error(e)
            logger.debug("Handshake with %s failed: %r", server_hostname, outcome)
            return outcome

        version = TLSVersion(tls_sock.version())
        if version not in allowed:
            tls_sock.close()
            return Rejected(f"negotiated {version.value} outside of {allowed!r}")

        validator = configuration.certificate_validator
        if validator is not None:
            info = CertificateInfo(server_hostname, tls_sock.getpeercert(True), version)
            try:
                accepted = validator(info)
            except Exception as e:
                tls_sock.close()
                return Rejected(CERTIFICATE_REJECTED, e)
            if not accepted:
                tls_sock.close()
                return Rejected(CERTIFICATE_REJECTED)

        tls_sock.settimeout(None)
        logger.debug("Negotiated %s with %s", version.value, server_hostname)
        return Negotiated(version, OpenSSLTLSConnection._create(tls_sock, configuration, version))


#: The stdlib ``Backend`` object.
STDLIB_BACKEND = Backend(handshaker=OpenSSLHandshaker())
