"""Abstract interface to TLS protocol-version policy for HTTP client transports."""

from __future__ import annotations

import logging
import os
import socket
import threading
from abc import abstractmethod
from collections.abc import Callable, Iterator
from enum import Enum
from typing import Protocol

__all__ = [
    "TLSVersion",
    "ProtocolSet",
    "TrustStore",
    "CertificateInfo",
    "CertificateValidator",
    "TLSClientConfiguration",
    "TransportTLSOptions",
    "HandshakeOutcome",
    "Negotiated",
    "Rejected",
    "TimedOut",
    "ConnectionClosed",
    "HandshakeInvoker",
    "Backend",
    "TLSError",
    "ConfigurationError",
    "ConfigurationFrozen",
    "RaggedEOF",
    "ConnectionFailure",
    "UnsupportedProtocolSet",
    "NegotiationMismatch",
    "HandshakeTimeout",
    "PeerClosedConnection",
    "CertificateRejected",
    "InvalidConfiguration",
    "DestinationUnreachable",
    "ConnectionCancelled",
]

logger = logging.getLogger(__name__)

#: Seconds allowed for a single handshake when no timeout is configured.
DEFAULT_HANDSHAKE_TIMEOUT = 10.0

#: Seconds allowed for opening the raw stream when no timeout is configured.
DEFAULT_CONNECT_TIMEOUT = 10.0

#: ``Rejected.reason`` when none of the requested versions can be used locally.
NO_SUPPORTED_PROTOCOL = "no supported protocol"

#: ``Rejected.reason`` when the peer certificate fails validation.
CERTIFICATE_REJECTED = "peer certificate rejected"

#: ``Rejected.reason`` when the configuration cannot be applied to the local
#: TLS stack, before anything is sent to the peer.
INVALID_CONFIGURATION = "invalid TLS configuration"


class TLSVersion(Enum):
    """
    Protocol versions that can be enabled on a transport.

    The values match the strings reported by OpenSSL for the negotiated
    version of a connection.
    """

    SSLv2 = "SSLv2"
    SSLv3 = "SSLv3"
    TLSv1 = "TLSv1"
    TLSv1_1 = "TLSv1.1"
    TLSv1_2 = "TLSv1.2"
    TLSv1_3 = "TLSv1.3"

    @property
    def flag(self) -> int:
        """The bit (or bits) that represent this version in a flag word."""
        return _VERSION_FLAGS[self]


_VERSION_FLAGS = {
    TLSVersion.SSLv2: 0x000C,
    TLSVersion.SSLv3: 0x0030,
    TLSVersion.TLSv1: 0x00C0,
    TLSVersion.TLSv1_1: 0x0300,
    TLSVersion.TLSv1_2: 0x0C00,
    TLSVersion.TLSv1_3: 0x3000,
}

# Ascending protocol order; enum definition order is relied upon elsewhere.
_ORDERED_VERSIONS = tuple(TLSVersion)


class ProtocolSet:
    """
    An immutable set of enabled protocol versions.

    The empty set means "no explicit restriction": the backend negotiates
    using its default policy. Membership is stored as a flag word so that
    bits belonging to versions unknown to this library survive a round trip.
    """

    __slots__ = ("_flags",)

    _flags: int

    def __init__(self, *versions: TLSVersion) -> None:
        """Creates a ProtocolSet containing the given versions."""

        flags = 0
        for version in versions:
            flags |= TLSVersion(version).flag
        self._flags = flags

    @classmethod
    def from_flags(cls, flags: int) -> ProtocolSet:
        """
        Creates a ProtocolSet from a flag word. Unknown bits are kept as-is
        and reported back by ``flags``.
        """
        if flags < 0:
            raise ValueError("Protocol flags cannot be negative.")
        self = cls.__new__(cls)
        self._flags = flags
        return self

    @classmethod
    def none(cls) -> ProtocolSet:
        """The empty set, deferring to the default policy."""
        return cls()

    @property
    def flags(self) -> int:
        """The flag word for this set, including any unknown bits."""
        return self._flags

    @property
    def versions(self) -> tuple[TLSVersion, ...]:
        """The known versions in this set, lowest first."""
        return tuple(v for v in _ORDERED_VERSIONS if self.contains(v))

    def union(self, other: ProtocolSet) -> ProtocolSet:
        """Returns the set containing every version in either set."""
        return ProtocolSet.from_flags(self._flags | other._flags)

    def intersection(self, other: ProtocolSet) -> ProtocolSet:
        """Returns the set containing the versions present in both sets."""
        return ProtocolSet.from_flags(self._flags & other._flags)

    def contains(self, version: TLSVersion) -> bool:
        flag = version.flag
        return self._flags & flag == flag

    def is_empty(self) -> bool:
        """
        True when no restriction was requested. This is not the same as a set
        that has no usable versions after platform filtering.
        """
        return self._flags == 0

    def __or__(self, other: object) -> ProtocolSet:
        if isinstance(other, TLSVersion):
            other = ProtocolSet(other)
        if not isinstance(other, ProtocolSet):
            return NotImplemented
        return self.union(other)

    __ror__ = __or__

    def __contains__(self, version: object) -> bool:
        return isinstance(version, TLSVersion) and self.contains(version)

    def __iter__(self) -> Iterator[TLSVersion]:
        return iter(self.versions)

    def __len__(self) -> int:
        return len(self.versions)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ProtocolSet):
            return NotImplemented
        return self._flags == other._flags

    def __hash__(self) -> int:
        return hash((ProtocolSet, self._flags))

    def __repr__(self) -> str:
        names = [v.name for v in self.versions]
        known = 0
        for v in self.versions:
            known |= v.flag
        unknown = self._flags & ~known
        if unknown:
            names.append(hex(unknown))
        return f"ProtocolSet({', '.join(names) or 'none'})"


class TrustStore:
    """
    The trust store that is used to verify certificate validity.
    """

    __slots__ = (
        "_buffer",
        "_path",
    )

    def __init__(self, buffer: bytes | None = None, path: os.PathLike | None = None):
        """
        Creates a TrustStore object from a path or a buffer.

        If neither is given, the default system trust store is used.
        """

        self._buffer = buffer
        self._path = path

    @classmethod
    def system(cls) -> TrustStore:
        """
        Returns a TrustStore object that represents the system trust
        database.
        """
        return cls()

    @classmethod
    def from_buffer(cls, buffer: bytes) -> TrustStore:
        """
        Initializes a trust store from a buffer of PEM-encoded certificates.
        """
        return cls(buffer=buffer)

    @classmethod
    def from_file(cls, path: os.PathLike) -> TrustStore:
        """
        Initializes a trust store from a single file containing PEMs.
        """
        return cls(path=path)

    @property
    def is_system(self) -> bool:
        return self._buffer is None and self._path is None


class CertificateInfo:
    """What a certificate validator gets to see about the peer."""

    __slots__ = (
        "_server_hostname",
        "_peer_certificate",
        "_tls_version",
    )

    def __init__(
        self,
        server_hostname: str | None,
        peer_certificate: bytes | None,
        tls_version: TLSVersion | None,
    ) -> None:
        self._server_hostname = server_hostname
        self._peer_certificate = peer_certificate
        self._tls_version = tls_version

    @property
    def server_hostname(self) -> str | None:
        """The name the client connected to."""
        return self._server_hostname

    @property
    def peer_certificate(self) -> bytes | None:
        """The DER bytes of the leaf certificate offered by the peer, if any."""
        return self._peer_certificate

    @property
    def tls_version(self) -> TLSVersion | None:
        """The version negotiated for the connection being validated."""
        return self._tls_version


#: A predicate deciding whether a peer certificate is acceptable.
CertificateValidator = Callable[[CertificateInfo], bool]


class TLSClientConfiguration:
    """
    An immutable TLS configuration for a single client connection attempt.
    Instances are snapshots of a ``TransportTLSOptions`` and never change
    once taken.

    :param enabled_protocols ProtocolSet:
        The protocol versions the handshake may use. The empty set means
        the backend default policy applies.

    :param certificate_validator CertificateValidator | None:
        A predicate replacing platform certificate validation. None means
        the platform validates the peer against ``trust_store``.

    :param handshake_timeout float:
        Seconds the handshake may take before it is abandoned.

    :param connect_timeout float | None:
        Seconds allowed for opening the raw stream. None blocks.

    :param trust_store TrustStore | None:
        The trust store used to validate certificates. None means that the
        system store is used.
    """

    __slots__ = (
        "_enabled_protocols",
        "_certificate_validator",
        "_handshake_timeout",
        "_connect_timeout",
        "_trust_store",
    )

    def __init__(
        self,
        enabled_protocols: ProtocolSet | None = None,
        certificate_validator: CertificateValidator | None = None,
        handshake_timeout: float = DEFAULT_HANDSHAKE_TIMEOUT,
        connect_timeout: float | None = DEFAULT_CONNECT_TIMEOUT,
        trust_store: TrustStore | None = None,
    ) -> None:
        """Initialize TLS client configuration."""

        if enabled_protocols is None:
            enabled_protocols = ProtocolSet()

        self._enabled_protocols = enabled_protocols
        self._certificate_validator = certificate_validator
        self._handshake_timeout = handshake_timeout
        self._connect_timeout = connect_timeout
        self._trust_store = trust_store

    @property
    def enabled_protocols(self) -> ProtocolSet:
        """
        The protocol versions the handshake may use. The empty set means
        the backend default policy applies.
        """
        return self._enabled_protocols

    @property
    def certificate_validator(self) -> CertificateValidator | None:
        """The predicate replacing platform certificate validation, if any."""
        return self._certificate_validator

    @property
    def handshake_timeout(self) -> float:
        return self._handshake_timeout

    @property
    def connect_timeout(self) -> float | None:
        return self._connect_timeout

    @property
    def trust_store(self) -> TrustStore | None:
        """
        The trust store that connections using this configuration will use
        to validate certificates. None means that the system store is used.
        """
        return self._trust_store


def _check_timeout(value: float | None, allow_none: bool) -> None:
    if value is None:
        if not allow_none:
            raise ValueError("Timeout cannot be None.")
        return
    if value <= 0:
        raise ValueError(f"Timeout must be positive, got {value!r}.")


class TransportTLSOptions:
    """
    The TLS options owned by a transport.

    Options can be changed freely until the first connection attempt starts.
    That attempt freezes them and every later setter raises
    ``ConfigurationFrozen``. Each attempt works from its own immutable
    snapshot, so concurrent attempts always observe one consistent set of
    values.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._frozen = False
        self._enabled_protocols = ProtocolSet()
        self._certificate_validator: CertificateValidator | None = None
        self._handshake_timeout = DEFAULT_HANDSHAKE_TIMEOUT
        self._connect_timeout: float | None = DEFAULT_CONNECT_TIMEOUT
        self._trust_store: TrustStore | None = None

    def _set(self, name: str, value: object) -> None:
        with self._lock:
            if self._frozen:
                raise ConfigurationFrozen(
                    f"Cannot change {name} after the first connection attempt has started."
                )
            setattr(self, f"_{name}", value)

    @property
    def is_frozen(self) -> bool:
        with self._lock:
            return self._frozen

    @property
    def enabled_protocols(self) -> ProtocolSet:
        return self._enabled_protocols

    @enabled_protocols.setter
    def enabled_protocols(self, value: ProtocolSet) -> None:
        if not isinstance(value, ProtocolSet):
            raise TypeError(f"Expected a ProtocolSet, got {type(value).__name__}.")
        self._set("enabled_protocols", value)

    @property
    def certificate_validator(self) -> CertificateValidator | None:
        return self._certificate_validator

    @certificate_validator.setter
    def certificate_validator(self, value: CertificateValidator | None) -> None:
        if value is not None and not callable(value):
            raise TypeError("The certificate validator must be callable.")
        self._set("certificate_validator", value)

    @property
    def handshake_timeout(self) -> float:
        return self._handshake_timeout

    @handshake_timeout.setter
    def handshake_timeout(self, value: float) -> None:
        _check_timeout(value, allow_none=False)
        self._set("handshake_timeout", value)

    @property
    def connect_timeout(self) -> float | None:
        return self._connect_timeout

    @connect_timeout.setter
    def connect_timeout(self, value: float | None) -> None:
        _check_timeout(value, allow_none=True)
        self._set("connect_timeout", value)

    @property
    def trust_store(self) -> TrustStore | None:
        return self._trust_store

    @trust_store.setter
    def trust_store(self, value: TrustStore | None) -> None:
        self._set("trust_store", value)

    def freeze(self) -> None:
        """Forbids any further changes. Calling it again has no effect."""
        with self._lock:
            self._frozen = True

    def snapshot(self) -> TLSClientConfiguration:
        """
        Freezes the options and returns their values as an immutable
        configuration. Both happen under the same lock as the setters.
        """
        with self._lock:
            if not self._frozen:
                logger.debug("Freezing transport TLS options")
            self._frozen = True
            return TLSClientConfiguration(
                enabled_protocols=self._enabled_protocols,
                certificate_validator=self._certificate_validator,
                handshake_timeout=self._handshake_timeout,
                connect_timeout=self._connect_timeout,
                trust_store=self._trust_store,
            )


class HandshakeOutcome:
    """The result of exactly one handshake attempt."""

    __slots__ = ("_detail",)

    def __init__(self, detail: BaseException | None = None) -> None:
        self._detail = detail

    @property
    def detail(self) -> BaseException | None:
        """The low-level exception behind this outcome, if there was one."""
        return self._detail

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self._detail!r})"


class Negotiated(HandshakeOutcome):
    """The peers agreed on ``version``; ``connection`` is ready for use."""

    __slots__ = ("_version", "_connection")

    def __init__(self, version: TLSVersion, connection: object) -> None:
        super().__init__()
        self._version = version
        self._connection = connection

    @property
    def version(self) -> TLSVersion:
        return self._version

    @property
    def connection(self) -> object:
        return self._connection

    def __repr__(self) -> str:
        return f"Negotiated({self._version.value})"


class Rejected(HandshakeOutcome):
    """
    The handshake was refused. ``reason`` says whether the peer sent a
    fatal alert or the refusal happened locally.
    """

    __slots__ = ("_reason",)

    def __init__(self, reason: str, detail: BaseException | None = None) -> None:
        super().__init__(detail)
        self._reason = reason

    @property
    def reason(self) -> str:
        return self._reason

    def __repr__(self) -> str:
        return f"Rejected({self._reason!r})"


class TimedOut(HandshakeOutcome):
    """No handshake completed within the timeout."""

    __slots__ = ()


class ConnectionClosed(HandshakeOutcome):
    """The stream closed before any alert was received."""

    __slots__ = ()


class HandshakeInvoker(Protocol):
    """Performs a single TLS client handshake over an open stream."""

    @abstractmethod
    def handshake(
        self,
        sock: socket.socket,
        server_hostname: str | None,
        configuration: TLSClientConfiguration,
    ) -> HandshakeOutcome:
        """
        Performs one handshake restricted to
        ``configuration.enabled_protocols``. Must not retry and must not
        mutate the configuration. Failures are returned as outcomes rather
        than raised.
        """

    @abstractmethod
    def supported_versions(self) -> ProtocolSet:
        """The versions the underlying TLS stack is able to perform."""


class Backend:
    """An object representing a TLS implementation this layer can drive."""

    __slots__ = ("_handshaker",)

    def __init__(self, handshaker: HandshakeInvoker) -> None:
        """Initializes all attributes of the backend."""

        self._handshaker = handshaker

    @property
    def handshaker(self) -> HandshakeInvoker:
        """The handshake invoker used for every connection attempt."""
        return self._handshaker

    def supported_versions(self) -> ProtocolSet:
        """Capability query against the underlying TLS stack."""
        return self._handshaker.supported_versions()


class TLSError(Exception):
    """
    The base exception for all TLS related errors from any backend.

    Catching this error should be sufficient to catch *all* TLS errors,
    regardless of what backend is used.
    """


class ConfigurationError(TLSError):
    """An exception raised for invalid use of the TLS configuration."""


class ConfigurationFrozen(ConfigurationError, RuntimeError):
    """A setter was called after the options were used for a connection."""


class RaggedEOF(TLSError):
    """A special signaling exception used when a TLS connection has been
    closed gracelessly: that is, when a TLS CloseNotify was not received
    from the peer before the underlying TCP socket reached EOF.
    """


class ConnectionFailure(TLSError):
    """
    The single error raised when a connection cannot be established.

    The subclass names the kind of failure. ``outcome`` holds the
    handshake outcome it was derived from, when there was a handshake.
    """

    def __init__(self, message: str, outcome: HandshakeOutcome | None = None) -> None:
        super().__init__(message)
        self.outcome = outcome


class UnsupportedProtocolSet(ConnectionFailure):
    """None of the requested versions can be performed by the platform."""


class NegotiationMismatch(ConnectionFailure):
    """The peer and the client have no protocol version in common."""


class HandshakeTimeout(ConnectionFailure):
    """The handshake did not complete in time."""


class PeerClosedConnection(ConnectionFailure):
    """The peer closed the stream without a formal alert."""


class CertificateRejected(ConnectionFailure):
    """The peer certificate failed validation."""


class InvalidConfiguration(ConnectionFailure):
    """
    The configuration snapshot could not be applied, for example a trust
    store without usable certificates. No peer was contacted.
    """


class DestinationUnreachable(ConnectionFailure):
    """The raw stream to the destination could not be opened."""


class ConnectionCancelled(ConnectionFailure):
    """The transport was closed while or before the attempt ran."""
