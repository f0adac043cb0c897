"""
Tests for `tlspolicy.tlspolicy`.
"""

import itertools
import threading
from unittest import TestCase

from tlspolicy import tlspolicy
from tlspolicy.tlspolicy import ProtocolSet, TLSVersion

_ALL_SETS = [
    ProtocolSet(*combo)
    for size in range(len(TLSVersion) + 1)
    for combo in itertools.combinations(TLSVersion, size)
]


class TestProtocolSet(TestCase):
    def test_union_is_idempotent(self):
        for p in _ALL_SETS:
            with self.subTest(p=p):
                self.assertEqual(p.union(p), p)

    def test_union_with_empty_is_identity(self):
        empty = ProtocolSet()
        for p in _ALL_SETS:
            with self.subTest(p=p):
                self.assertEqual(p.union(empty), p)
                self.assertEqual(empty.union(p), p)

    def test_union_is_pure(self):
        a = ProtocolSet(TLSVersion.TLSv1_2)
        b = ProtocolSet(TLSVersion.TLSv1_3)
        c = a.union(b)
        self.assertEqual(a.versions, (TLSVersion.TLSv1_2,))
        self.assertEqual(b.versions, (TLSVersion.TLSv1_3,))
        self.assertEqual(c.versions, (TLSVersion.TLSv1_2, TLSVersion.TLSv1_3))
        self.assertEqual(a | b, c)
        self.assertEqual(a | TLSVersion.TLSv1_3, c)
        self.assertEqual(TLSVersion.TLSv1_3 | a, c)

    def test_set_semantics(self):
        a = ProtocolSet(TLSVersion.TLSv1_3, TLSVersion.TLSv1_2, TLSVersion.TLSv1_2)
        b = ProtocolSet(TLSVersion.TLSv1_2, TLSVersion.TLSv1_3)
        self.assertEqual(a, b)
        self.assertEqual(hash(a), hash(b))
        self.assertEqual(len(a), 2)
        self.assertEqual(list(a), [TLSVersion.TLSv1_2, TLSVersion.TLSv1_3])
        self.assertIsNot(a, b)

    def test_contains(self):
        p = ProtocolSet(TLSVersion.TLSv1, TLSVersion.TLSv1_2)
        self.assertTrue(p.contains(TLSVersion.TLSv1))
        self.assertTrue(p.contains(TLSVersion.TLSv1_2))
        self.assertFalse(p.contains(TLSVersion.TLSv1_1))
        self.assertIn(TLSVersion.TLSv1_2, p)
        self.assertNotIn(TLSVersion.TLSv1_3, p)
        self.assertNotIn("TLSv1.2", p)

    def test_empty(self):
        self.assertTrue(ProtocolSet().is_empty())
        self.assertTrue(ProtocolSet.none().is_empty())
        self.assertFalse(ProtocolSet(TLSVersion.SSLv2).is_empty())
        self.assertEqual(ProtocolSet().versions, ())

    def test_from_value(self):
        self.assertEqual(ProtocolSet("TLSv1.2"), ProtocolSet(TLSVersion.TLSv1_2))
        with self.assertRaises(ValueError):
            ProtocolSet("TLSv9")

    def test_flags(self):
        self.assertEqual(ProtocolSet(TLSVersion.TLSv1_2).flags, 0x0C00)
        self.assertEqual(ProtocolSet(TLSVersion.TLSv1, TLSVersion.TLSv1_1).flags, 0x03C0)
        self.assertEqual(
            ProtocolSet.from_flags(0x3C00), ProtocolSet(TLSVersion.TLSv1_2, TLSVersion.TLSv1_3)
        )

    def test_unknown_flags_are_preserved(self):
        unknown = ProtocolSet.from_flags(0x10000)
        self.assertFalse(unknown.is_empty())
        self.assertEqual(unknown.versions, ())
        self.assertEqual(unknown.flags, 0x10000)

        mixed = unknown | ProtocolSet(TLSVersion.TLSv1_2)
        self.assertEqual(mixed.flags, 0x10C00)
        self.assertEqual(mixed.versions, (TLSVersion.TLSv1_2,))
        self.assertNotEqual(mixed, ProtocolSet(TLSVersion.TLSv1_2))
        self.assertIn("0x10000", repr(mixed))

    def test_negative_flags(self):
        with self.assertRaises(ValueError):
            ProtocolSet.from_flags(-1)

    def test_intersection(self):
        a = ProtocolSet(TLSVersion.TLSv1_1, TLSVersion.TLSv1_2)
        b = ProtocolSet(TLSVersion.TLSv1_2, TLSVersion.TLSv1_3)
        self.assertEqual(a.intersection(b), ProtocolSet(TLSVersion.TLSv1_2))
        self.assertTrue(a.intersection(ProtocolSet()).is_empty())

    def test_repr(self):
        self.assertEqual(repr(ProtocolSet()), "ProtocolSet(none)")
        self.assertEqual(
            repr(ProtocolSet(TLSVersion.TLSv1_3, TLSVersion.TLSv1_2)),
            "ProtocolSet(TLSv1_2, TLSv1_3)",
        )


class TestTransportTLSOptions(TestCase):
    def test_default_protocols(self):
        options = tlspolicy.TransportTLSOptions()
        self.assertEqual(options.enabled_protocols, ProtocolSet())
        self.assertIsNone(options.certificate_validator)
        self.assertIsNone(options.trust_store)
        self.assertEqual(options.handshake_timeout, tlspolicy.DEFAULT_HANDSHAKE_TIMEOUT)
        self.assertFalse(options.is_frozen)

    def test_set_get_protocols_roundtrips(self):
        for p in _ALL_SETS:
            with self.subTest(p=p):
                options = tlspolicy.TransportTLSOptions()
                options.enabled_protocols = p
                self.assertEqual(options.enabled_protocols, p)

    def test_rejects_non_protocol_set(self):
        options = tlspolicy.TransportTLSOptions()
        with self.assertRaises(TypeError):
            options.enabled_protocols = TLSVersion.TLSv1_2
        with self.assertRaises(TypeError):
            options.certificate_validator = "yes"

    def test_rejects_bad_timeouts(self):
        options = tlspolicy.TransportTLSOptions()
        with self.assertRaises(ValueError):
            options.handshake_timeout = 0
        with self.assertRaises(ValueError):
            options.handshake_timeout = None
        with self.assertRaises(ValueError):
            options.connect_timeout = -1
        options.connect_timeout = None
        self.assertIsNone(options.connect_timeout)

    def test_freeze(self):
        options = tlspolicy.TransportTLSOptions()
        options.freeze()
        options.freeze()
        self.assertTrue(options.is_frozen)

        with self.assertRaises(tlspolicy.ConfigurationFrozen):
            options.enabled_protocols = ProtocolSet(TLSVersion.TLSv1_2)
        with self.assertRaises(tlspolicy.ConfigurationFrozen):
            options.certificate_validator = lambda info: True
        with self.assertRaises(tlspolicy.ConfigurationFrozen):
            options.handshake_timeout = 1.0
        with self.assertRaises(tlspolicy.ConfigurationFrozen):
            options.trust_store = tlspolicy.TrustStore.system()

        self.assertEqual(options.enabled_protocols, ProtocolSet())
        self.assertIsNone(options.certificate_validator)

    def test_frozen_is_a_runtime_error(self):
        self.assertTrue(issubclass(tlspolicy.ConfigurationFrozen, RuntimeError))
        self.assertTrue(issubclass(tlspolicy.ConfigurationFrozen, tlspolicy.TLSError))

    def test_snapshot(self):
        def validator(info):
            return True

        options = tlspolicy.TransportTLSOptions()
        options.enabled_protocols = ProtocolSet(TLSVersion.TLSv1_2)
        options.certificate_validator = validator
        options.handshake_timeout = 2.5

        snapshot = options.snapshot()

        self.assertTrue(options.is_frozen)
        self.assertIsInstance(snapshot, tlspolicy.TLSClientConfiguration)
        self.assertEqual(snapshot.enabled_protocols, ProtocolSet(TLSVersion.TLSv1_2))
        self.assertIs(snapshot.certificate_validator, validator)
        self.assertEqual(snapshot.handshake_timeout, 2.5)
        with self.assertRaises(AttributeError):
            snapshot.enabled_protocols = ProtocolSet()

    def test_racing_setter_and_snapshots_agree(self):
        options = tlspolicy.TransportTLSOptions()
        options.enabled_protocols = ProtocolSet(TLSVersion.TLSv1_2)
        barrier = threading.Barrier(9)
        seen = []
        setter_result = []

        def take_snapshot():
            barrier.wait()
            seen.append(options.snapshot().enabled_protocols)

        def set_protocols():
            barrier.wait()
            try:
                options.enabled_protocols = ProtocolSet(TLSVersion.TLSv1_3)
                setter_result.append(True)
            except tlspolicy.ConfigurationFrozen:
                setter_result.append(False)

        threads = [threading.Thread(target=take_snapshot) for _ in range(8)]
        threads.append(threading.Thread(target=set_protocols))
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(len(seen), 8)
        self.assertEqual(len(set(seen)), 1)
        expected = TLSVersion.TLSv1_3 if setter_result[0] else TLSVersion.TLSv1_2
        self.assertEqual(seen[0], ProtocolSet(expected))


class TestTLSClientConfiguration(TestCase):
    def test_defaults(self):
        config = tlspolicy.TLSClientConfiguration()
        self.assertEqual(config.enabled_protocols, ProtocolSet())
        self.assertIsNone(config.certificate_validator)
        self.assertIsNone(config.trust_store)
        self.assertEqual(config.connect_timeout, tlspolicy.DEFAULT_CONNECT_TIMEOUT)


class TestTrustStore(TestCase):
    def test_pure_types(self):
        self.assertIsInstance(tlspolicy.TrustStore.from_buffer(b""), tlspolicy.TrustStore)
        self.assertIsInstance(tlspolicy.TrustStore.from_file(""), tlspolicy.TrustStore)
        self.assertIsInstance(tlspolicy.TrustStore.system(), tlspolicy.TrustStore)
        self.assertTrue(tlspolicy.TrustStore.system().is_system)
        self.assertFalse(tlspolicy.TrustStore.from_buffer(b"pem").is_system)


class TestOutcomes(TestCase):
    def test_variants(self):
        detail = TimeoutError("timed out")
        self.assertIs(tlspolicy.TimedOut(detail).detail, detail)
        self.assertIsNone(tlspolicy.ConnectionClosed().detail)

        rejected = tlspolicy.Rejected("protocol version", detail)
        self.assertEqual(rejected.reason, "protocol version")
        self.assertIs(rejected.detail, detail)

        negotiated = tlspolicy.Negotiated(TLSVersion.TLSv1_2, connection=None)
        self.assertEqual(negotiated.version, TLSVersion.TLSv1_2)
        self.assertIsNone(negotiated.detail)
        self.assertEqual(repr(negotiated), "Negotiated(TLSv1.2)")


class TestErrors(TestCase):
    def test_taxonomy(self):
        for kind in (
            tlspolicy.UnsupportedProtocolSet,
            tlspolicy.NegotiationMismatch,
            tlspolicy.HandshakeTimeout,
            tlspolicy.PeerClosedConnection,
            tlspolicy.CertificateRejected,
            tlspolicy.InvalidConfiguration,
            tlspolicy.DestinationUnreachable,
            tlspolicy.ConnectionCancelled,
        ):
            with self.subTest(kind=kind):
                self.assertTrue(issubclass(kind, tlspolicy.ConnectionFailure))
                self.assertTrue(issubclass(kind, tlspolicy.TLSError))

    def test_outcome_is_kept(self):
        outcome = tlspolicy.TimedOut()
        error = tlspolicy.HandshakeTimeout("slow", outcome)
        self.assertIs(error.outcome, outcome)
        self.assertIsNone(tlspolicy.ConnectionFailure("no outcome").outcome)


class TestBackend(TestCase):
    def test_backend_types(self):
        class Handshaker:
            def handshake(self, sock, server_hostname, configuration):
                return tlspolicy.TimedOut()

            def supported_versions(self):
                return ProtocolSet(TLSVersion.TLSv1_3)

        handshaker = Handshaker()
        backend = tlspolicy.Backend(handshaker=handshaker)

        self.assertIs(backend.handshaker, handshaker)
        self.assertEqual(backend.supported_versions(), ProtocolSet(TLSVersion.TLSv1_3))
